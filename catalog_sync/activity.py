import logging

from django.conf import settings

from .models import ActivityLogEntry

logger = logging.getLogger(__name__)

SYNC_QUEUED = 'sync_queued'
SYNC_COMPLETE = 'sync_complete'
SYNC_ERROR = 'sync_error'
BRAND_COMPLETE = 'brand_complete'


def log_activity(activity_type: str, description: str, data: dict | None = None) -> ActivityLogEntry:
    """Persist an activity feed entry and mirror it to the application log."""
    entry = ActivityLogEntry.objects.create(
        type=activity_type,
        description=description[:255],
        data=data or {},
    )
    logger.info("Activity: %s - %s %s", activity_type, description, data or {})
    _trim()
    return entry


def _trim():
    max_entries = getattr(settings, 'CATALOG_SYNC_ACTIVITY_LOG_MAX_ENTRIES', 1000)
    stale_ids = list(
        ActivityLogEntry.objects.values_list('id', flat=True)[max_entries:]
    )
    if stale_ids:
        ActivityLogEntry.objects.filter(id__in=stale_ids).delete()


def get_activity_log(limit: int = 50, activity_type: str | None = None) -> list[dict]:
    qs = ActivityLogEntry.objects.all()
    if activity_type:
        qs = qs.filter(type=activity_type)
    return [
        {
            'timestamp': entry.created_at.isoformat(),
            'type': entry.type,
            'description': entry.description,
            'data': entry.data,
        }
        for entry in qs[:limit]
    ]


def clear_activity_log() -> int:
    deleted, _ = ActivityLogEntry.objects.all().delete()
    logger.info("Activity log cleared (%d entries).", deleted)
    return deleted
