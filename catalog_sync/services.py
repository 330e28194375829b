import functools
import logging
from typing import Optional

from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings

from . import brands
from .activity import clear_activity_log
from .batch_queue import BatchQueue
from .catalog_client import CatalogClient
from .errors import classify_error
from .processor import BatchProcessor
from .progress import ProgressTracker
from .rotation import JobRotation
from .store import StoreProductUpserter
from .sync import SyncOrchestrator

logger = logging.getLogger(__name__)


def safe_operation(func):
    """
    Turn any exception raised by an admin operation into a failure dict.

    SoftTimeLimitExceeded is left to the Celery task that set the limit.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SoftTimeLimitExceeded:
            raise
        except Exception as exc:
            logger.exception("Operation %s failed.", func.__name__)
            return {'success': False, 'error': str(exc), 'error_type': classify_error(exc)}

    return wrapper


class SyncService:
    """Admin-facing operations over the sync components."""

    def __init__(
        self,
        client: CatalogClient,
        queue: BatchQueue,
        rotation: JobRotation,
        processor: BatchProcessor,
        orchestrator: SyncOrchestrator,
        progress: ProgressTracker,
    ):
        self.client = client
        self.queue = queue
        self.rotation = rotation
        self.processor = processor
        self.orchestrator = orchestrator
        self.progress = progress

    @classmethod
    def default(cls, client: Optional[CatalogClient] = None) -> 'SyncService':
        client = client or CatalogClient()
        queue = BatchQueue()
        rotation = JobRotation()
        upserter = StoreProductUpserter()
        progress = ProgressTracker()
        processor = BatchProcessor(queue, upserter, progress)
        orchestrator = SyncOrchestrator(client, queue, rotation, upserter, progress)
        return cls(client, queue, rotation, processor, orchestrator, progress)

    @safe_operation
    def run_sync(self, brand=None, immediate: bool = False) -> dict:
        if immediate:
            if brand is None:
                job = self.rotation.next_job()
                if job is None:
                    return {'success': False, 'error': 'No jobs available'}
                brand = job.brand
            return self.orchestrator.run_brand_synchronously(brand)

        if brand is None:
            return self.orchestrator.run_scheduled()

        job = self.orchestrator.resolve_job(brand)
        if job is None:
            return {'success': False, 'error': f"Brand not found: {brand}"}
        return self.orchestrator.run_for_job(job)

    @safe_operation
    def process_batches(self, limit: Optional[int] = None) -> dict:
        limit = limit or getattr(settings, 'CATALOG_SYNC_PROCESS_LIMIT', 3)
        recovered = self.queue.requeue_stale()
        result = self.processor.process_pending(limit)
        result['stale_recovered'] = recovered
        brands = sorted({r['brand'] for r in result['results'] if r.get('brand')})
        result['completion'] = {
            brand: self.orchestrator.check_brand_completion(brand)['completed'] for brand in brands
        }
        return result

    @safe_operation
    def execute_batch(self, batch_id: int) -> dict:
        result = self.processor.process(batch_id).to_dict()
        if result['brand']:
            self.orchestrator.check_brand_completion(result['brand'])
        return result

    @safe_operation
    def get_queue_status(self) -> dict:
        return {
            'success': True,
            'stats': self.queue.get_stats(),
            'processing': self.processor.get_processing_stats(),
            'rotation': self.rotation.get_status(),
        }

    @safe_operation
    def reset_failed_batches(self, brand: Optional[str] = None) -> dict:
        reset = self.queue.reset_failed_for_retry(brand)
        return {'success': True, 'reset_count': reset}

    @safe_operation
    def requeue_stale_batches(self, older_than: Optional[int] = None) -> dict:
        return {'success': True, **self.queue.requeue_stale(older_than)}

    @safe_operation
    def cleanup_old_batches(self, days: Optional[int] = None) -> dict:
        days = days or getattr(settings, 'CATALOG_SYNC_RETENTION_DAYS', 7)
        self.queue.requeue_stale()
        deleted = self.queue.cleanup_older_than(days)
        return {'success': True, 'deleted_count': deleted, 'days': days}

    @safe_operation
    def get_brand_progress(self, brand: Optional[str] = None) -> dict:
        if brand is None:
            return {'success': True, 'progress': self.progress.all()}
        return {'success': True, 'progress': self.progress.get(brand)}

    @safe_operation
    def check_brand_completion(self, brand: str) -> dict:
        return {'success': True, **self.orchestrator.check_brand_completion(brand)}

    @safe_operation
    def rebuild_jobs(self) -> dict:
        jobs = self.rotation.rebuild()
        return {'success': True, 'jobs': [job.to_dict() for job in jobs]}

    @safe_operation
    def seed_brands(self) -> dict:
        created = brands.seed_defaults()
        jobs = self.rotation.rebuild()
        return {'success': True, **created, 'total_jobs': len(jobs)}

    @safe_operation
    def import_brands(self) -> dict:
        result = brands.import_brands(self.client.get_brands())
        jobs = self.rotation.rebuild()
        return {'success': True, **result, 'total_jobs': len(jobs)}

    @safe_operation
    def test_connection(self) -> dict:
        connected = self.client.test_connection()
        result = {'success': connected, 'status': self.client.get_status()}
        if not connected:
            result['error'] = 'Could not obtain an API token'
        return result

    @safe_operation
    def clear_all(self) -> dict:
        self.client.clear_cache()
        self.rotation.reset()
        cleared_progress = self.progress.clear_all()
        cleared_log = clear_activity_log()
        logger.info("All sync caches and state cleared.")
        return {
            'success': True,
            'progress_cleared': cleared_progress,
            'activity_cleared': cleared_log,
        }
