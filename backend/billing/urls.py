"""URL routes for billing endpoints."""
from django.urls import path

from .views_webhook import StripeWebhookView

app_name = "billing"

urlpatterns = [
    path("webhook/stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
]
