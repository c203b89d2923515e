import os
from celery import Celery
from celery.schedules import crontab

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'servicehub_project.settings')

app = Celery('servicehub_project')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()

# Beat schedule - same logic as the management commands
app.conf.beat_schedule = {
    'auto-confirm-sweep': {
        'task': 'core.tasks.auto_confirm_sweep_task',
        'schedule': crontab(minute='*/5'),  # Every 5 minutes
    },
    'retry-failed-payouts': {
        'task': 'core.tasks.retry_failed_payouts_task',
        'schedule': crontab(minute=30),  # Every hour
    },
}

app.conf.timezone = 'UTC'
