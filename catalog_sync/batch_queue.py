import json
import logging
from datetime import timedelta
from typing import Iterable, Optional

from django.conf import settings
from django.db.models import Count, DateTimeField, F, Min, Q, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from .errors import InvalidTransitionError, ValidationError
from .models import BatchStatus, SyncBatch

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    BatchStatus.PENDING: {BatchStatus.PROCESSING},
    BatchStatus.PROCESSING: {BatchStatus.PENDING, BatchStatus.COMPLETED, BatchStatus.FAILED},
    BatchStatus.FAILED: {BatchStatus.PENDING, BatchStatus.PROCESSING},
    BatchStatus.COMPLETED: set(),
}

TERMINAL_STATUSES = (BatchStatus.COMPLETED, BatchStatus.FAILED)


class BatchQueue:
    """
    Durable queue of product batches backed by the SyncBatch table.

    Claiming is a compare-and-set on the status column, so several worker
    processes can pull from the same table without processing a batch twice
    in parallel.
    """

    def enqueue(
        self,
        brand: str,
        categories: Iterable[int],
        products: list,
        batch_index: int,
        total_batches: int,
        priority: int = 0,
        max_attempts: Optional[int] = None,
    ) -> int:
        if not 1 <= batch_index <= total_batches:
            raise ValidationError(
                f"Batch index {batch_index} out of range for {total_batches} batches."
            )
        if max_attempts is None:
            max_attempts = getattr(settings, 'CATALOG_SYNC_MAX_ATTEMPTS', 3)

        batch = SyncBatch.objects.create(
            brand=brand,
            categories=sorted(categories),
            payload=json.dumps(products, ensure_ascii=False),
            batch_index=batch_index,
            total_batches=total_batches,
            priority=priority,
            max_attempts=max_attempts,
        )
        logger.debug(
            "Enqueued batch %d for %s (%d/%d, %d products).",
            batch.pk, brand, batch_index, total_batches, len(products),
        )
        return batch.pk

    def get_batch(self, batch_id: int) -> Optional[SyncBatch]:
        return SyncBatch.objects.filter(pk=batch_id).first()

    def list_batches(self, brand=None, status=None, limit=None) -> list[SyncBatch]:
        qs = SyncBatch.objects.all()
        if brand:
            qs = qs.filter(brand=brand)
        if status:
            qs = qs.filter(status=status)
        if limit:
            qs = qs[:limit]
        return list(qs)

    def delete_batch(self, batch_id: int) -> bool:
        deleted, _ = SyncBatch.objects.filter(pk=batch_id).delete()
        if deleted:
            logger.info("Deleted batch %d.", batch_id)
        return bool(deleted)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def get_pending(self, limit: int = 1) -> list[SyncBatch]:
        """Pending batches in queue order, without changing their status."""
        return list(
            SyncBatch.objects.filter(status=BatchStatus.PENDING)
            .order_by('-priority', 'created_at', 'id')[:limit]
        )

    def claim(self, batch_id: int, from_statuses=(BatchStatus.PENDING,)) -> Optional[SyncBatch]:
        """
        Atomically move a batch to processing.

        Returns the claimed row, or None when the batch is not in one of
        `from_statuses` (e.g. another worker claimed it first).
        """
        now = timezone.now()
        claimed = SyncBatch.objects.filter(pk=batch_id, status__in=list(from_statuses)).update(
            status=BatchStatus.PROCESSING,
            attempts=F('attempts') + 1,
            started_at=Coalesce(F('started_at'), Value(now, output_field=DateTimeField())),
            claimed_at=now,
            completed_at=None,
        )
        if not claimed:
            return None
        return SyncBatch.objects.get(pk=batch_id)

    def claim_pending(self, limit: int = 1) -> list[SyncBatch]:
        claimed = []
        # Over-fetch so that batches lost to other workers can be skipped.
        for candidate in self.get_pending(limit * 2 + 5):
            if len(claimed) >= limit:
                break
            batch = self.claim(candidate.pk)
            if batch is None:
                logger.debug("Batch %d already claimed by another worker.", candidate.pk)
                continue
            claimed.append(batch)
        return claimed

    def release(self, batch_id: int) -> bool:
        """Hand a claimed but unstarted batch back to pending without spending an attempt."""
        released = SyncBatch.objects.filter(pk=batch_id, status=BatchStatus.PROCESSING).update(
            status=BatchStatus.PENDING,
            attempts=F('attempts') - 1,
            claimed_at=None,
        )
        if released:
            logger.info("Released batch %d back to pending.", batch_id)
        return bool(released)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def update_status(self, batch_id: int, status: str, error_message: Optional[str] = None) -> SyncBatch:
        batch = SyncBatch.objects.get(pk=batch_id)
        if status not in ALLOWED_TRANSITIONS.get(batch.status, set()):
            raise InvalidTransitionError(batch_id, batch.status, status)

        now = timezone.now()
        batch.status = status
        if status == BatchStatus.PROCESSING:
            if batch.started_at is None:
                batch.started_at = now
            batch.claimed_at = now
            batch.attempts += 1
            batch.completed_at = None
        elif status in TERMINAL_STATUSES:
            batch.completed_at = now
        elif status == BatchStatus.PENDING:
            batch.completed_at = None
        if error_message is not None:
            batch.error_message = error_message
        batch.save(update_fields=[
            'status', 'started_at', 'claimed_at', 'completed_at', 'attempts', 'error_message',
        ])

        logger.debug("Batch %d -> %s.", batch_id, status)
        return batch

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def get_stats(self, brand: Optional[str] = None) -> dict:
        qs = SyncBatch.objects.all()
        if brand:
            qs = qs.filter(brand=brand)

        counts = qs.aggregate(
            pending=Count('id', filter=Q(status=BatchStatus.PENDING)),
            processing=Count('id', filter=Q(status=BatchStatus.PROCESSING)),
            completed=Count('id', filter=Q(status=BatchStatus.COMPLETED)),
            failed=Count('id', filter=Q(status=BatchStatus.FAILED)),
            total=Count('id'),
            oldest_pending=Min('created_at', filter=Q(status=BatchStatus.PENDING)),
        )
        oldest = counts.pop('oldest_pending')
        counts['oldest_pending_age'] = (
            int((timezone.now() - oldest).total_seconds()) if oldest else None
        )
        return counts

    def cleanup_older_than(self, days: int) -> int:
        cutoff = timezone.now() - timedelta(days=days)
        deleted, _ = (
            SyncBatch.objects.filter(status__in=TERMINAL_STATUSES)
            .filter(
                Q(completed_at__lt=cutoff)
                | Q(completed_at__isnull=True, created_at__lt=cutoff)
            )
            .delete()
        )
        if deleted:
            logger.info("Cleaned up %d batches older than %d days.", deleted, days)
        return deleted

    def requeue_stale(self, older_than: Optional[int] = None) -> dict:
        """
        Recover batches left in processing by a worker that died mid-batch.

        A batch claimed more than `older_than` seconds ago goes back to
        pending while it has attempts left, and to failed otherwise.
        """
        if older_than is None:
            older_than = getattr(settings, 'CATALOG_SYNC_STALE_AFTER', 900)
        now = timezone.now()
        cutoff = now - timedelta(seconds=older_than)
        stale = SyncBatch.objects.filter(status=BatchStatus.PROCESSING).filter(
            Q(claimed_at__lt=cutoff) | Q(claimed_at__isnull=True, started_at__lt=cutoff)
        )
        message = f"Worker did not finish the batch within {older_than}s."

        failed = stale.filter(attempts__gte=F('max_attempts')).update(
            status=BatchStatus.FAILED,
            completed_at=now,
            error_message=message + ' (max attempts reached or non-retryable error)',
        )
        requeued = stale.filter(attempts__lt=F('max_attempts')).update(
            status=BatchStatus.PENDING,
            claimed_at=None,
            completed_at=None,
            error_message=message,
        )
        if requeued or failed:
            logger.warning(
                "Recovered stale batches: %d requeued, %d failed (older than %ds).",
                requeued, failed, older_than,
            )
        return {'requeued': requeued, 'failed': failed}

    def reset_failed_for_retry(self, brand: Optional[str] = None) -> int:
        qs = SyncBatch.objects.filter(status=BatchStatus.FAILED, attempts__lt=F('max_attempts'))
        if brand:
            qs = qs.filter(brand=brand)
        reset = qs.update(
            status=BatchStatus.PENDING,
            started_at=None,
            claimed_at=None,
            completed_at=None,
            error_message='',
        )
        logger.info("Reset %d failed batches for retry (brand=%s).", reset, brand or 'all')
        return reset
