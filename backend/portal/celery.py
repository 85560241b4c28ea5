import os
from celery import Celery

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'portal.settings')

app = Celery('portal')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Task routing: billing notifications get their own queue
app.conf.task_routes = {
    "billing.tasks.deliver_notification": {"queue": "billing_notifications"},

    # Default queue
    '*': {'queue': 'default'},
}

# Default queue configuration
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
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Notifications are best-effort; a lost worker must not redeliver them
    task_acks_late=False,

    # Queue settings
    task_queues={
        'default': {
            'exchange': 'default',
            'routing_key': 'default',
        },
        'billing_notifications': {
            'exchange': 'billing_notifications',
            'routing_key': 'billing_notifications',
        },
    },

    # Error handling
    task_ignore_result=True,
)

# Set task-specific limits
app.conf.task_annotations = {
    'billing.tasks.deliver_notification': {
        'rate_limit': '120/m',
        'time_limit': 60,
        'soft_time_limit': 45,
    },
}
