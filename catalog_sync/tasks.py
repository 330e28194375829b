import logging

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings

from .errors import classify_error
from .services import SyncService

logger = logging.getLogger(__name__)


def processing_soft_time_limit() -> int:
    """Soft limit for one processing run: the batch budget times the batches per run, plus slack."""
    budget = getattr(settings, 'CATALOG_SYNC_BATCH_TIME_BUDGET', 60) or 60
    limit = getattr(settings, 'CATALOG_SYNC_PROCESS_LIMIT', 3) or 3
    return int(budget * limit * 2)


@shared_task(bind=True, name='catalog_sync.trigger_next_job')
def trigger_next_job(self):
    """
    Scheduled entry point: queue the catalog of the next brand in rotation.

    Fire-and-forget; the outcome is returned as a dict and recorded in the
    activity log, failures never propagate to the scheduler.
    """
    logger.info("Triggering next catalog sync job.")
    result = SyncService.default().run_sync()
    if result.get('success'):
        logger.info("Next job queued: %s", result.get('job'))
    else:
        logger.warning("Next job trigger finished with error: %s", result.get('error'))
    return result


@shared_task(
    bind=True,
    name='catalog_sync.process_pending_batches',
    soft_time_limit=processing_soft_time_limit(),
)
def process_pending_batches(self, limit=None):
    """Process up to CATALOG_SYNC_PROCESS_LIMIT queued batches and check brand completion."""
    try:
        result = SyncService.default().process_batches(limit)
    except SoftTimeLimitExceeded as exc:
        logger.error("Batch processing hit the soft time limit; remaining batches stay queued.")
        return {'success': False, 'error': 'Soft time limit exceeded', 'error_type': classify_error(exc)}

    logger.info(
        "Batch processing run finished: processed=%s completion=%s",
        result.get('processed', 0), result.get('completion', {}),
    )
    return result


@shared_task(name='catalog_sync.cleanup_old_batches')
def cleanup_old_batches(days=None):
    result = SyncService.default().cleanup_old_batches(days)
    logger.info("Batch cleanup finished: %s", result)
    return result
