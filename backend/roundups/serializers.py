"""Serializers for the round-up job and summary endpoints."""
from __future__ import annotations

from rest_framework import serializers

from roundups.models import JobDefinition, JobExecution
from roundups.services import tracker


class JobExecutionSerializer(serializers.ModelSerializer):
    class Meta:
        model = JobExecution
        fields = (
            "id",
            "status",
            "trigger",
            "started_at",
            "finished_at",
            "duration_ms",
            "total_processed",
            "success_count",
            "failure_count",
            "error_message",
        )
        read_only_fields = fields


class JobDefinitionSerializer(serializers.ModelSerializer):
    statistics = serializers.SerializerMethodField()
    recent_executions = serializers.SerializerMethodField()

    class Meta:
        model = JobDefinition
        fields = (
            "name",
            "schedule",
            "description",
            "is_enabled",
            "last_status",
            "last_started_at",
            "last_completed_at",
            "last_total_processed",
            "last_success_count",
            "last_failure_count",
            "last_failure_reason",
            "statistics",
            "recent_executions",
        )
        read_only_fields = fields

    def get_statistics(self, obj: JobDefinition) -> dict:
        return tracker.job_statistics(obj.name)

    def get_recent_executions(self, obj: JobDefinition) -> list:
        limit = self.context.get("execution_limit", 5)
        return JobExecutionSerializer(tracker.recent_executions(obj.name, limit=limit), many=True).data


class MonthlyBreakdownSerializer(serializers.Serializer):
    month = serializers.CharField()
    count = serializers.IntegerField()
    amount = serializers.CharField()
    donated = serializers.CharField()


class SummaryQuerySerializer(serializers.Serializer):
    months = serializers.IntegerField(required=False, min_value=1, max_value=36, default=12)
