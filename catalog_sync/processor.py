import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

import psutil
from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings

from .batch_queue import BatchQueue
from .errors import (
    DecodeError,
    ErrorCategory,
    MemoryLimitError,
    UpsertError,
    classify_error,
    is_retryable,
)
from .models import BatchStatus, SyncBatch
from .progress import ProgressTracker
from .store import CREATED, UPDATED, ProductUpserter

logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 100


class ResourceGuard:
    """
    Advisory execution limits for one unit of work.

    The time budget only produces a warning once it is exceeded; in-flight
    work is never interrupted. The memory ceiling is checked before each
    record and raises MemoryLimitError so the batch is retried later.
    """

    def __init__(self, time_budget: Optional[float] = None, memory_limit_mb: Optional[float] = None):
        self.time_budget = time_budget
        self.memory_limit_mb = memory_limit_mb
        self._started = time.monotonic()
        self.over_budget = False

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def check(self, context: str = ''):
        if self.time_budget and not self.over_budget and self.elapsed > self.time_budget:
            self.over_budget = True
            logger.warning(
                "Time budget of %.0fs exceeded (%.1fs elapsed) %s.",
                self.time_budget, self.elapsed, context,
            )
        if self.memory_limit_mb:
            rss_mb = psutil.Process().memory_info().rss / 1024 / 1024
            if rss_mb > self.memory_limit_mb:
                raise MemoryLimitError(
                    f"Memory usage {rss_mb:.0f}MB above limit of {self.memory_limit_mb:.0f}MB {context}."
                )


@dataclass
class RecordResults:
    total: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    details: list = field(default_factory=list)


def upsert_records(records: list, brand: str, upserter: ProductUpserter, guard: Optional[ResourceGuard] = None) -> RecordResults:
    """
    Run the upserter over every record. A record-level UpsertError is counted
    and the loop continues; any other exception propagates to the caller.
    """
    results = RecordResults(total=len(records))
    for index, record in enumerate(records):
        if guard is not None:
            guard.check(f"while processing {brand}")
        try:
            outcome = upserter.upsert(record, brand)
        except UpsertError as exc:
            results.errors += 1
            results.details.append({'index': index, 'sku': exc.sku, 'error': str(exc)})
            logger.warning("Record %d of %s failed: %s", index, brand, exc)
            continue

        if outcome.action == CREATED:
            results.created += 1
        elif outcome.action == UPDATED:
            results.updated += 1

        if (index + 1) % PROGRESS_LOG_EVERY == 0:
            logger.info(
                "Processed %d/%d records for %s (created=%d, updated=%d, errors=%d).",
                index + 1, results.total, brand, results.created, results.updated, results.errors,
            )
    return results


@dataclass
class ProcessResult:
    success: bool
    batch_id: int
    brand: str = ''
    batch_index: int = 0
    total_batches: int = 0
    total: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    retryable: bool = False
    attempts: int = 0
    details: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def decode_payload(batch: SyncBatch) -> list:
    try:
        products = json.loads(batch.payload)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"JSON decode error for batch {batch.pk}: {exc}") from exc
    if not isinstance(products, list):
        raise DecodeError(f"Invalid batch data format for batch {batch.pk}.")
    return products


class BatchProcessor:
    def __init__(
        self,
        queue: BatchQueue,
        upserter: ProductUpserter,
        progress: ProgressTracker,
        batch_time_budget: Optional[float] = None,
        memory_limit_mb: Optional[float] = None,
    ):
        self.queue = queue
        self.upserter = upserter
        self.progress = progress
        self.batch_time_budget = (
            batch_time_budget if batch_time_budget is not None
            else getattr(settings, 'CATALOG_SYNC_BATCH_TIME_BUDGET', 60)
        )
        self.memory_limit_mb = (
            memory_limit_mb if memory_limit_mb is not None
            else getattr(settings, 'CATALOG_SYNC_BATCH_MEMORY_LIMIT_MB', None)
        )

    def process(self, batch_id: int, allow_failed: bool = True) -> ProcessResult:
        """Claim one batch by id and process it."""
        logger.info("Starting batch processing for batch %s.", batch_id)

        batch = self.queue.get_batch(batch_id)
        if batch is None:
            return self._rejected(batch_id, f"Batch not found: {batch_id}")

        from_statuses = [BatchStatus.PENDING]
        if allow_failed:
            from_statuses.append(BatchStatus.FAILED)
        claimed = self.queue.claim(batch_id, from_statuses=from_statuses)
        if claimed is None:
            return self._rejected(
                batch_id,
                f"Batch {batch_id} is not in a processable state (current status: {batch.status})",
                batch=batch,
            )
        return self.process_claimed(claimed)

    def process_claimed(self, batch: SyncBatch) -> ProcessResult:
        """Process a batch that is already in the processing state."""
        guard = ResourceGuard(self.batch_time_budget, self.memory_limit_mb)
        try:
            products = decode_payload(batch)
            logger.info(
                "Processing batch %d for %s (%d/%d, %d products, attempt %d/%d).",
                batch.pk, batch.brand, batch.batch_index, batch.total_batches,
                len(products), batch.attempts, batch.max_attempts,
            )
            results = upsert_records(products, batch.brand, self.upserter, guard)
        except SoftTimeLimitExceeded as exc:
            # Record the interrupted attempt, then let the task runner see the limit.
            self._handle_failure(batch, exc)
            raise
        except Exception as exc:
            return self._handle_failure(batch, exc)

        self.queue.update_status(batch.pk, BatchStatus.COMPLETED)
        self.progress.update(batch.brand, batch.batch_index, batch.total_batches, results)

        logger.info(
            "Batch %d completed in %.1fs (created=%d, updated=%d, errors=%d).",
            batch.pk, guard.elapsed, results.created, results.updated, results.errors,
        )
        return ProcessResult(
            success=True,
            batch_id=batch.pk,
            brand=batch.brand,
            batch_index=batch.batch_index,
            total_batches=batch.total_batches,
            total=results.total,
            created=results.created,
            updated=results.updated,
            errors=results.errors,
            attempts=batch.attempts,
            details=results.details,
        )

    def _handle_failure(self, batch: SyncBatch, exc: Exception) -> ProcessResult:
        error_type = classify_error(exc)
        message = str(exc) or exc.__class__.__name__
        retryable = is_retryable(error_type) and batch.attempts < batch.max_attempts

        logger.error(
            "Batch %d failed: %s (type=%s, attempts=%d/%d, retry=%s)",
            batch.pk, message, error_type, batch.attempts, batch.max_attempts, retryable,
            exc_info=True,
        )

        if retryable:
            self.queue.update_status(batch.pk, BatchStatus.PENDING, message)
            logger.info(
                "Batch %d marked for retry (%d/%d attempts used).",
                batch.pk, batch.attempts, batch.max_attempts,
            )
        else:
            self.queue.update_status(
                batch.pk,
                BatchStatus.FAILED,
                f"{message} (max attempts reached or non-retryable error)",
            )

        return ProcessResult(
            success=False,
            batch_id=batch.pk,
            brand=batch.brand,
            batch_index=batch.batch_index,
            total_batches=batch.total_batches,
            error=message,
            error_type=error_type,
            retryable=retryable,
            attempts=batch.attempts,
        )

    @staticmethod
    def _rejected(batch_id, message, batch=None) -> ProcessResult:
        logger.warning(message)
        return ProcessResult(
            success=False,
            batch_id=batch_id,
            brand=batch.brand if batch else '',
            batch_index=batch.batch_index if batch else 0,
            total_batches=batch.total_batches if batch else 0,
            error=message,
            error_type=ErrorCategory.VALIDATION,
            retryable=False,
            attempts=batch.attempts if batch else 0,
        )

    def process_pending(self, limit: int = 1) -> dict:
        logger.info("Processing up to %d pending batches.", limit)
        batches = self.queue.claim_pending(limit)
        if not batches:
            logger.info("No pending batches to process.")
            return {'success': True, 'processed': 0, 'results': []}

        results = []
        for position, batch in enumerate(batches):
            try:
                result = self.process_claimed(batch).to_dict()
            except SoftTimeLimitExceeded:
                for unstarted in batches[position + 1:]:
                    self.queue.release(unstarted.pk)
                logger.error(
                    "Soft time limit reached after %d of %d claimed batches.",
                    position, len(batches),
                )
                raise
            except Exception as exc:
                logger.exception("Failed to process batch %d from queue.", batch.pk)
                result = {
                    'success': False,
                    'batch_id': batch.pk,
                    'brand': batch.brand,
                    'error': str(exc),
                    'error_type': classify_error(exc),
                }
            results.append(result)

        logger.info("Processed %d batches from queue.", len(results))
        return {'success': True, 'processed': len(results), 'results': results}

    def get_processing_stats(self) -> dict:
        active = self.progress.all()
        return {
            'queue_stats': self.queue.get_stats(),
            'active_brands': active,
            'total_active_brands': len(active),
        }
