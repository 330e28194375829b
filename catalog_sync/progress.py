import hashlib
import logging
import time
from contextlib import contextmanager
from typing import Optional

from django.conf import settings
from django.core.cache import cache as default_cache

logger = logging.getLogger(__name__)

KEY_PREFIX = 'catalog_sync:progress:'
INDEX_KEY = 'catalog_sync:progress:__brands__'
LOCK_PREFIX = 'catalog_sync:progress-lock:'
LOCK_TIMEOUT = 10
LOCK_WAIT = 5
LOCK_POLL = 0.01


class ProgressTracker:
    """
    Per-brand batch progress kept in the Django cache.

    Entries carry their own `expires_at` which is checked on read, so an
    entry is treated as gone once its TTL passed even if the cache backend
    still returns it.
    """

    def __init__(self, cache=None, ttl: Optional[int] = None):
        self._cache = cache or default_cache
        self._ttl = ttl or getattr(settings, 'CATALOG_SYNC_PROGRESS_TTL', 3600)

    @staticmethod
    def _key(brand: str) -> str:
        # Brand names contain spaces and arbitrary characters; memcached rejects those.
        return KEY_PREFIX + hashlib.sha1(brand.encode('utf-8')).hexdigest()

    @contextmanager
    def _lock(self, name: str):
        """
        Serialise read-modify-write cycles on one cache entry across workers.

        `cache.add` only succeeds for the first caller. The lock expires after
        LOCK_TIMEOUT seconds.
        """
        key = LOCK_PREFIX + hashlib.sha1(name.encode('utf-8')).hexdigest()
        deadline = time.monotonic() + LOCK_WAIT
        acquired = self._cache.add(key, 1, LOCK_TIMEOUT)
        while not acquired:
            if time.monotonic() > deadline:
                logger.warning("Timed out waiting for progress lock on %s; updating without it.", name)
                break
            time.sleep(LOCK_POLL)
            acquired = self._cache.add(key, 1, LOCK_TIMEOUT)
        try:
            yield
        finally:
            if acquired:
                self._cache.delete(key)

    def update(self, brand: str, batch_index: int, total_batches: int, result) -> dict:
        with self._lock(brand):
            progress = self._apply(brand, batch_index, total_batches, result)
        self._remember(brand)

        logger.debug(
            "Progress for %s: %d/%d batches, %d products.",
            brand, progress['completed_batches'], progress['total_batches'],
            progress['processed_products'],
        )
        return progress

    def _apply(self, brand: str, batch_index: int, total_batches: int, result) -> dict:
        now = time.time()
        progress = self._read(brand, now)
        if progress is None:
            progress = {
                'brand': brand,
                'total_batches': total_batches,
                'completed_batches': 0,
                'total_products': 0,
                'processed_products': 0,
                'created': 0,
                'updated': 0,
                'errors': 0,
                'started_at': now,
                'updated_at': now,
            }

        total = getattr(result, 'total', 0) or 0
        # Batches can finish out of order across workers; never move backwards.
        progress['completed_batches'] = max(progress['completed_batches'], batch_index)
        progress['total_batches'] = max(progress['total_batches'], total_batches)
        progress['processed_products'] += total
        progress['created'] += getattr(result, 'created', 0) or 0
        progress['updated'] += getattr(result, 'updated', 0) or 0
        progress['errors'] += getattr(result, 'errors', 0) or 0
        if progress['total_products'] == 0 and total:
            progress['total_products'] = total * progress['total_batches']
        progress['completion_percentage'] = self._percentage(progress)
        progress['updated_at'] = now
        progress['expires_at'] = now + self._ttl

        self._cache.set(self._key(brand), progress, self._ttl)
        return progress

    def get(self, brand: str) -> Optional[dict]:
        progress = self._read(brand, time.time())
        if progress is None:
            return None
        snapshot = dict(progress)
        snapshot['completion_percentage'] = self._percentage(snapshot)
        snapshot['time_elapsed'] = int(snapshot['updated_at'] - snapshot['started_at'])
        return snapshot

    def clear(self, brand: str):
        with self._lock(brand):
            self._cache.delete(self._key(brand))
        with self._lock(INDEX_KEY):
            brands = set(self._cache.get(INDEX_KEY) or ())
            brands.discard(brand)
            self._cache.set(INDEX_KEY, sorted(brands), None)
        logger.info("Cleared progress for brand %s.", brand)

    def active_brands(self) -> list[str]:
        return [b for b in sorted(self._cache.get(INDEX_KEY) or ()) if self.get(b) is not None]

    def all(self) -> dict:
        result = {}
        for brand in self.active_brands():
            snapshot = self.get(brand)
            if snapshot is not None:
                result[brand] = snapshot
        return result

    def clear_all(self) -> int:
        brands = list(self._cache.get(INDEX_KEY) or ())
        self._cache.delete_many([self._key(b) for b in brands])
        self._cache.delete(INDEX_KEY)
        return len(brands)

    def _read(self, brand: str, now: float) -> Optional[dict]:
        progress = self._cache.get(self._key(brand))
        if not progress:
            return None
        if progress.get('expires_at') is not None and progress['expires_at'] <= now:
            self._cache.delete(self._key(brand))
            return None
        return progress

    def _remember(self, brand: str):
        with self._lock(INDEX_KEY):
            brands = set(self._cache.get(INDEX_KEY) or ())
            if brand not in brands:
                brands.add(brand)
                self._cache.set(INDEX_KEY, sorted(brands), None)

    @staticmethod
    def _percentage(progress: dict) -> float:
        if not progress.get('total_batches'):
            return 0
        return round(progress['completed_batches'] / progress['total_batches'] * 100, 2)
