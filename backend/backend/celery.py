import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'backend.settings')

app = Celery('backend')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Task routing configuration – assign different queues for different types of tasks
app.conf.task_routes = {
    # Round-up pipeline
    "roundups.tasks.process_roundup_transactions": {"queue": "roundups"},
    "roundups.tasks.process_scheduled_donations": {"queue": "roundups"},
    "roundups.tasks.reconcile_in_flight_donations": {"queue": "roundups"},
    "roundups.tasks.prune_job_executions": {"queue": "maintenance"},

    # Billing related tasks
    "billing.tasks.process_stripe_event_async": {"queue": "billing"},
    "billing.tasks.cleanup_webhook_event_logs": {"queue": "maintenance"},

    # Default queue
    '*': {'queue': 'default'},
}

app.conf.task_default_queue = 'default'

app.conf.update(
    # Serialization settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone settings
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_track_started=True,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    worker_disable_rate_limits=False,

    # Retry settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Monitoring settings
    worker_send_task_events=True,
    task_send_sent_event=True,

    # Queue settings
    task_queues={
        'default': {
            'exchange': 'default',
            'routing_key': 'default',
        },
        'roundups': {
            'exchange': 'roundups',
            'routing_key': 'roundups',
        },
        'billing': {
            'exchange': 'billing',
            'routing_key': 'billing',
        },
        'maintenance': {
            'exchange': 'maintenance',
            'routing_key': 'maintenance',
        },
    },

    task_inherit_parent_priority=True,
    task_default_priority=5,

    # Error handling
    task_ignore_result=False,
    task_store_errors_even_if_ignored=True,
)

app.conf.task_annotations = {
    # A run never overlaps its successor; the job lock outlives the hard limit.
    'roundups.tasks.process_roundup_transactions': {
        'time_limit': 55 * 60,
        'soft_time_limit': 50 * 60,
    },
    'roundups.tasks.process_scheduled_donations': {
        'time_limit': 30 * 60,
        'soft_time_limit': 25 * 60,
    },
    'roundups.tasks.reconcile_in_flight_donations': {
        'rate_limit': '4/h',
        'time_limit': 10 * 60,
        'soft_time_limit': 9 * 60,
    },
}

# Celery Beat schedule configuration
app.conf.beat_schedule = {
    "roundup_transactions_every_4_hours": {
        "task": "roundups.tasks.process_roundup_transactions",
        "schedule": crontab(minute=0, hour="*/4"),
        "options": {"queue": "roundups", "priority": 8},
    },
    "scheduled_donations_hourly": {
        "task": "roundups.tasks.process_scheduled_donations",
        "schedule": crontab(minute=0),
        "options": {"queue": "roundups"},
    },
    "reconcile_in_flight_donations_hourly": {
        "task": "roundups.tasks.reconcile_in_flight_donations",
        "schedule": crontab(minute=30),
        "options": {"queue": "roundups"},
    },
    "prune_job_executions_daily": {
        "task": "roundups.tasks.prune_job_executions",
        "schedule": crontab(hour=3, minute=15),
        "options": {"queue": "maintenance"},
    },
    "cleanup_webhook_logs_daily": {
        "task": "billing.tasks.cleanup_webhook_event_logs",
        "schedule": crontab(hour=4, minute=0),
        "options": {"queue": "maintenance"},
    },
}

