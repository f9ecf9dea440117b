"""Round-up API views: job status, manual triggers and the donor summary."""
from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from roundups.models import JobDefinition
from roundups.serializers import JobDefinitionSerializer, MonthlyBreakdownSerializer, SummaryQuerySerializer
from roundups.services import projections, tracker
from roundups.services.scheduler import get_job

logger = logging.getLogger(__name__)


class JobListView(APIView):
    """Registered jobs with their last run and execution statistics."""

    permission_classes = [IsAdminUser]

    def get(self, request):
        jobs = JobDefinition.objects.order_by("name")
        serializer = JobDefinitionSerializer(jobs, many=True, context={"request": request})
        return Response(
            {
                "jobs": serializer.data,
                "last_24_hours": tracker.execution_summary(hours=24),
            }
        )


class JobTriggerView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, job_name: str):
        try:
            job = get_job(job_name)
        except LookupError:
            return Response({"detail": f"Unknown job '{job_name}'."}, status=status.HTTP_404_NOT_FOUND)

        logger.info("Manual trigger of job %s requested by user %s.", job_name, request.user.pk)
        result = job.manual_trigger()
        http_status = status.HTTP_200_OK if result["success"] else status.HTTP_409_CONFLICT
        return Response(result, status=http_status)


class RoundUpSummaryView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        query = SummaryQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)

        summary = projections.user_summary(request.user)
        breakdown = projections.monthly_breakdown(request.user, months=query.validated_data["months"])
        summary["monthly"] = MonthlyBreakdownSerializer(breakdown, many=True).data
        return Response(summary)
