"""Run a registered round-up job immediately."""
from django.core.management.base import BaseCommand, CommandError

from roundups.services import tracker
from roundups.services.scheduler import JOBS, get_job


class Command(BaseCommand):
    help = "Run a round-up job now, outside of the Celery beat schedule"

    def add_arguments(self, parser):
        parser.add_argument(
            "job_name",
            nargs="?",
            help=f"Job to run. One of: {', '.join(sorted(JOBS))}",
        )
        parser.add_argument(
            "--stats",
            action="store_true",
            help="Print execution statistics for the job instead of running it",
        )

    def handle(self, *args, **options):
        job_name = options.get("job_name")
        if not job_name:
            for name in sorted(JOBS):
                self.stdout.write(name)
            return

        try:
            job = get_job(job_name)
        except LookupError as exc:
            raise CommandError(str(exc)) from exc

        if options.get("stats"):
            for key, value in tracker.job_statistics(job.job_name).items():
                self.stdout.write(f"{key}: {value}")
            return

        job.register()
        result = job.manual_trigger()
        if result["success"]:
            self.stdout.write(self.style.SUCCESS(result["message"]))
        else:
            raise CommandError(result["message"])
