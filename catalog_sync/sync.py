import logging
import time
from typing import Optional, Union

from django.conf import settings

from .activity import BRAND_COMPLETE, SYNC_COMPLETE, SYNC_ERROR, SYNC_QUEUED, log_activity
from .batch_queue import BatchQueue
from .catalog_client import CatalogClient
from .errors import AuthError, FetchError, classify_error
from .models import Brand
from .processor import ResourceGuard, upsert_records
from .progress import ProgressTracker
from .rotation import Job, JobRotation, build_jobs_from_config
from .store import ProductUpserter

logger = logging.getLogger(__name__)


def chunk(records: list, size: int) -> list[list]:
    return [records[i:i + size] for i in range(0, len(records), size)]


class SyncOrchestrator:
    """
    Turns brand jobs into queued batches, or processes one brand inline.

    Fetch failures are reported in the result dict and in the activity log;
    nothing is enqueued for a job whose catalog could not be read.
    """

    def __init__(
        self,
        client: CatalogClient,
        queue: BatchQueue,
        rotation: JobRotation,
        upserter: ProductUpserter,
        progress: ProgressTracker,
        batch_size: Optional[int] = None,
    ):
        self.client = client
        self.queue = queue
        self.rotation = rotation
        self.upserter = upserter
        self.progress = progress
        self.batch_size = batch_size or getattr(settings, 'CATALOG_SYNC_BATCH_SIZE', 500)

    def run_scheduled(self) -> dict:
        job = self.rotation.next_job()
        if job is None:
            logger.warning("Scheduled sync skipped: no jobs available.")
            return {'success': False, 'error': 'No jobs available'}

        results = self.run_for_job(job)
        return {'success': results['success'], 'job': job.to_dict(), 'results': results}

    def run_for_job(self, job: Job) -> dict:
        categories = sorted(job.categories)
        result = {
            'success': False,
            'brand': job.brand,
            'categories': categories,
            'catalog_count': 0,
            'batches_queued': 0,
            'total_batches': 0,
            'failed_batches': 0,
            'batch_ids': [],
        }
        logger.info("Starting sync for brand %s (categories=%s).", job.brand, categories or 'all')

        try:
            catalog = self.client.get_catalog(job.brand, categories)
        except (AuthError, FetchError) as exc:
            logger.error("Sync for brand %s failed: %s", job.brand, exc)
            log_activity(
                SYNC_ERROR,
                f"Failed to fetch catalog for {job.brand}",
                {'brand': job.brand, 'categories': categories, 'error': str(exc)},
            )
            result['error'] = str(exc)
            return result

        result['catalog_count'] = len(catalog)
        if not catalog:
            logger.info("Empty catalog for brand %s, nothing to queue.", job.brand)
            result['success'] = True
            return result

        slices = chunk(catalog, self.batch_size)
        result['total_batches'] = len(slices)

        for index, products in enumerate(slices, start=1):
            try:
                batch_id = self.queue.enqueue(
                    job.brand, categories, products, index, len(slices),
                )
            except Exception:
                logger.exception(
                    "Failed to queue batch %d/%d for brand %s.", index, len(slices), job.brand,
                )
                result['failed_batches'] += 1
                continue
            result['batch_ids'].append(batch_id)
            result['batches_queued'] += 1

        result['success'] = result['batches_queued'] > 0
        if not result['success']:
            result['error'] = f"No batches could be queued for {job.brand}"

        log_activity(
            SYNC_QUEUED,
            f"Queued {result['batches_queued']} batches for {job.brand}",
            {
                'brand': job.brand,
                'categories': categories,
                'catalog_count': result['catalog_count'],
                'batches_queued': result['batches_queued'],
                'failed_batches': result['failed_batches'],
            },
        )
        logger.info(
            "Sync for brand %s queued %d/%d batches (%d products).",
            job.brand, result['batches_queued'], result['total_batches'], result['catalog_count'],
        )
        return result

    def run_full_sync(self) -> dict:
        jobs = self.rotation.get_jobs() or self.rotation.rebuild()
        results = [self.run_for_job(job) for job in jobs]
        return {
            'success': bool(results) and all(r['success'] for r in results),
            'jobs_processed': len(results),
            'batches_queued': sum(r['batches_queued'] for r in results),
            'results': results,
        }

    def run_brand_synchronously(self, brand: Union[str, int]) -> dict:
        """
        Fetch one brand's catalog and upsert it inline, bypassing the queue.

        Runs under the immediate-path limits, which are looser than the
        per-batch ones.
        """
        started = time.monotonic()
        job = self.resolve_job(brand)
        if job is None:
            return {'success': False, 'brand': brand, 'error': f"Brand not found: {brand}"}

        result = {
            'success': False,
            'brand': job.brand,
            'catalog_count': 0,
            'processed_count': 0,
            'created': 0,
            'updated': 0,
            'errors': 0,
            'error_details': [],
            'duration': 0.0,
        }
        logger.info("Starting immediate sync for brand %s.", job.brand)

        guard = ResourceGuard(
            getattr(settings, 'CATALOG_SYNC_IMMEDIATE_TIME_BUDGET', None),
            getattr(settings, 'CATALOG_SYNC_IMMEDIATE_MEMORY_LIMIT_MB', None),
        )
        try:
            catalog = self.client.get_catalog(job.brand, sorted(job.categories))
            result['catalog_count'] = len(catalog)
            records = upsert_records(catalog, job.brand, self.upserter, guard)
        except Exception as exc:
            logger.exception("Immediate sync for brand %s failed.", job.brand)
            result['error'] = str(exc)
            result['error_type'] = classify_error(exc)
            result['duration'] = round(time.monotonic() - started, 2)
            log_activity(
                SYNC_ERROR,
                f"Immediate sync failed for {job.brand}",
                {'brand': job.brand, 'error': str(exc)},
            )
            return result

        result.update(
            success=True,
            processed_count=records.total,
            created=records.created,
            updated=records.updated,
            errors=records.errors,
            error_details=records.details,
            duration=round(time.monotonic() - started, 2),
        )
        log_activity(
            SYNC_COMPLETE,
            f"Immediate sync completed for {job.brand}",
            {k: result[k] for k in ('brand', 'catalog_count', 'created', 'updated', 'errors', 'duration')},
        )
        logger.info(
            "Immediate sync for brand %s done in %.1fs (created=%d, updated=%d, errors=%d).",
            job.brand, result['duration'], records.created, records.updated, records.errors,
        )
        return result

    def check_brand_completion(self, brand: str) -> dict:
        stats = self.queue.get_stats(brand)
        completed = stats['pending'] == 0 and stats['processing'] == 0
        progress = self.progress.get(brand)

        if completed and progress is not None:
            log_activity(
                BRAND_COMPLETE,
                f"All batches completed for {brand}",
                {'brand': brand, 'progress': progress, 'stats': stats},
            )
            self.progress.clear(brand)
            logger.info("Brand %s completed all batches.", brand)

        return {'completed': completed, 'stats': stats, 'progress': progress}

    def resolve_job(self, brand: Union[str, int]) -> Optional[Job]:
        if isinstance(brand, int) or (isinstance(brand, str) and brand.isdigit()):
            record = Brand.objects.filter(pk=int(brand)).first()
            if record is None:
                return None
            name = record.name
        else:
            name = str(brand).strip()
            if not name:
                return None

        for job in build_jobs_from_config():
            if job.brand.lower() == name.lower():
                return job
        return Job(brand=name)
