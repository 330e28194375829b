import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from django.conf import settings
from django.db import transaction

from .models import Brand, Category, SyncState

logger = logging.getLogger(__name__)

JOBS_KEY = 'jobs'
INDEX_KEY = 'jobs_index'


@dataclass(frozen=True)
class Job:
    """One brand and the category codes to request for it. Empty means all."""

    brand: str
    categories: frozenset = field(default_factory=frozenset)
    brand_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'brand': self.brand,
            'categories': sorted(self.categories),
            'brand_id': self.brand_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Job':
        return cls(
            brand=data['brand'],
            categories=frozenset(int(c) for c in data.get('categories') or ()),
            brand_id=data.get('brand_id'),
        )


def build_jobs_from_config() -> list[Job]:
    """
    Build the job list from the active brands and their category assignments.

    A brand assigned to every active category (or to none) requests the whole
    catalog. Without any configured brand the list falls back to
    CATALOG_SYNC_DEFAULT_BRANDS.
    """
    active_codes = set(Category.objects.filter(is_active=True).values_list('code', flat=True))
    jobs = []
    for brand in Brand.objects.filter(is_active=True).prefetch_related('categories'):
        codes = {c.code for c in brand.categories.all() if c.is_active}
        if not codes or codes >= active_codes:
            codes = set()
        jobs.append(Job(brand=brand.name, categories=frozenset(codes), brand_id=brand.pk))

    if jobs:
        return jobs

    defaults = getattr(settings, 'CATALOG_SYNC_DEFAULT_BRANDS', {})
    logger.info("No brands configured, using %d default brands.", len(defaults))
    return [Job(brand=name, categories=frozenset(codes)) for name, codes in defaults.items()]


class JobRotation:
    """
    Round-robin cursor over the brand jobs, persisted in SyncState.

    Every call to next_job() advances the cursor before the caller does any
    work, so a brand whose sync fails does not block the ones after it.
    """

    def __init__(self, build_jobs: Optional[Callable[[], list[Job]]] = None):
        self._build_jobs = build_jobs or build_jobs_from_config

    def next_job(self) -> Optional[Job]:
        with transaction.atomic():
            cursor, _ = SyncState.objects.select_for_update().get_or_create(
                key=INDEX_KEY, defaults={'value': 0},
            )
            jobs = self.get_jobs()
            if not jobs:
                jobs = self._store_jobs(self._build_jobs())
            if not jobs:
                logger.warning("No jobs available for rotation.")
                return None

            index = cursor.value if isinstance(cursor.value, int) else 0
            if not 0 <= index < len(jobs):
                index = 0
            job = jobs[index]

            cursor.value = (index + 1) % len(jobs)
            cursor.save(update_fields=['value', 'updated_at'])

        logger.info(
            "Next job: %s (categories=%s), index %d/%d.",
            job.brand, sorted(job.categories) or 'all', index + 1, len(jobs),
        )
        return job

    def rebuild(self) -> list[Job]:
        with transaction.atomic():
            jobs = self._store_jobs(self._build_jobs())
            self.set_index(0)
        logger.info("Rebuilt job list with %d jobs.", len(jobs))
        return jobs

    def get_jobs(self) -> list[Job]:
        state = SyncState.objects.filter(key=JOBS_KEY).first()
        if state is None or not state.value:
            return []
        return [Job.from_dict(item) for item in state.value]

    def get_index(self) -> int:
        state = SyncState.objects.filter(key=INDEX_KEY).first()
        if state is None or not isinstance(state.value, int):
            return 0
        return state.value

    def set_index(self, index: int) -> bool:
        jobs = self.get_jobs()
        if index < 0 or (jobs and index >= len(jobs)):
            logger.warning("Rejected job index %d for %d jobs.", index, len(jobs))
            return False
        SyncState.objects.update_or_create(key=INDEX_KEY, defaults={'value': index})
        return True

    def reset(self):
        SyncState.objects.filter(key__in=[JOBS_KEY, INDEX_KEY]).delete()
        logger.info("Job rotation state reset.")

    def get_status(self) -> dict:
        jobs = self.get_jobs()
        index = self.get_index()
        # The cursor points at the job the next call to next_job() hands out.
        upcoming = jobs[index] if 0 <= index < len(jobs) else None
        following = jobs[(index + 1) % len(jobs)] if jobs else None
        return {
            'total_jobs': len(jobs),
            'current_index': index,
            'upcoming_job': upcoming.to_dict() if upcoming else None,
            'following_job': following.to_dict() if following else None,
            'jobs': [job.to_dict() for job in jobs],
        }

    @staticmethod
    def _store_jobs(jobs: list[Job]) -> list[Job]:
        SyncState.objects.update_or_create(
            key=JOBS_KEY, defaults={'value': [job.to_dict() for job in jobs]},
        )
        return jobs
