"""Celery application and beat schedule for the catalog sync."""

import os
from datetime import timedelta

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('catalog_sync')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()

app.conf.beat_schedule = {
    # Next brand in rotation
    'trigger-next-job': {
        'task': 'catalog_sync.trigger_next_job',
        'schedule': timedelta(minutes=int(os.environ.get('CATALOG_SYNC_INTERVAL_MINUTES', '60'))),
    },
    'process-pending-batches': {
        'task': 'catalog_sync.process_pending_batches',
        'schedule': crontab(minute='*/5'),
    },
    # Retention cleanup daily at 3 AM
    'cleanup-old-batches': {
        'task': 'catalog_sync.cleanup_old_batches',
        'schedule': crontab(minute=0, hour=3),
    },
}
