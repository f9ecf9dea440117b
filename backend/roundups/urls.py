"""URL routes for round-up endpoints."""
from django.urls import path

from .views import JobListView, JobTriggerView, RoundUpSummaryView

app_name = "roundups"

urlpatterns = [
    path("jobs/", JobListView.as_view(), name="job-list"),
    path("jobs/<str:job_name>/trigger/", JobTriggerView.as_view(), name="job-trigger"),
    path("summary/", RoundUpSummaryView.as_view(), name="summary"),
]
