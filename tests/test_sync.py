import json

import pytest

from catalog_sync.activity import BRAND_COMPLETE, SYNC_COMPLETE, SYNC_ERROR, SYNC_QUEUED
from catalog_sync.batch_queue import BatchQueue
from catalog_sync.brands import seed_defaults
from catalog_sync.errors import AuthError, FetchError
from catalog_sync.models import ActivityLogEntry, Brand, StoreProduct, SyncBatch
from catalog_sync.processor import BatchProcessor
from catalog_sync.progress import ProgressTracker
from catalog_sync.rotation import Job, JobRotation
from catalog_sync.store import StoreProductUpserter
from catalog_sync.sync import SyncOrchestrator, chunk


class FakeClient:
    def __init__(self, catalog=(), exc=None):
        self.catalog = list(catalog)
        self.exc = exc
        self.calls = []

    def get_catalog(self, brand, categories=()):
        self.calls.append((brand, list(categories)))
        if self.exc is not None:
            raise self.exc
        return list(self.catalog)


class FlakyQueue(BatchQueue):
    """Fails to enqueue the batch numbers listed in `fail_indexes`."""

    def __init__(self, fail_indexes):
        self.fail_indexes = set(fail_indexes)

    def enqueue(self, brand, categories, products, batch_index, total_batches, **kwargs):
        if batch_index in self.fail_indexes:
            raise RuntimeError('database is locked')
        return super().enqueue(brand, categories, products, batch_index, total_batches, **kwargs)


def catalog_of(size):
    return [{'Sku': f'SKU-{i}', 'Name': f'Product {i}', 'Quantity': 1} for i in range(size)]


def make_orchestrator(client, queue=None, jobs=None):
    rotation = JobRotation(build_jobs=(lambda: list(jobs)) if jobs is not None else None)
    return SyncOrchestrator(
        client, queue or BatchQueue(), rotation, StoreProductUpserter(), ProgressTracker(),
    )


def activity_types():
    return list(ActivityLogEntry.objects.order_by('id').values_list('type', flat=True))


class TestChunk:
    def test_last_chunk_holds_remainder(self):
        assert [len(c) for c in chunk(list(range(1237)), 500)] == [500, 500, 237]

    def test_empty(self):
        assert chunk([], 500) == []


# ---------------------------------------------------------------------------
# run_for_job
# ---------------------------------------------------------------------------

@pytest.mark.django_db
class TestRunForJob:
    def test_catalog_split_into_batches(self):
        orchestrator = make_orchestrator(FakeClient(catalog_of(1237)))

        result = orchestrator.run_for_job(Job('HP INC', frozenset({7, 1})))

        assert result['success'] is True
        assert result['catalog_count'] == 1237
        assert result['batches_queued'] == 3
        assert result['total_batches'] == 3
        batches = SyncBatch.objects.order_by('batch_index')
        assert [b.batch_index for b in batches] == [1, 2, 3]
        assert [b.total_batches for b in batches] == [3, 3, 3]
        assert [len(json.loads(b.payload)) for b in batches] == [500, 500, 237]
        assert all(b.categories == [1, 7] for b in batches)
        assert activity_types() == [SYNC_QUEUED]

    def test_batch_size_setting_shared(self, settings):
        settings.CATALOG_SYNC_BATCH_SIZE = 100
        result = make_orchestrator(FakeClient(catalog_of(250))).run_for_job(Job('DELL'))
        assert result['total_batches'] == 3

    def test_empty_catalog_is_success(self):
        result = make_orchestrator(FakeClient([])).run_for_job(Job('BOSE'))

        assert result['success'] is True
        assert result['catalog_count'] == 0
        assert result['batches_queued'] == 0
        assert SyncBatch.objects.count() == 0

    @pytest.mark.parametrize('exc', [FetchError('HTTP 500'), AuthError('bad credentials')])
    def test_fetch_failure_enqueues_nothing(self, exc):
        result = make_orchestrator(FakeClient(exc=exc)).run_for_job(Job('DELL'))

        assert result['success'] is False
        assert result['error'] == str(exc)
        assert SyncBatch.objects.count() == 0
        assert activity_types() == [SYNC_ERROR]

    def test_enqueue_failure_does_not_abort_loop(self):
        orchestrator = make_orchestrator(FakeClient(catalog_of(1237)), queue=FlakyQueue({2}))

        result = orchestrator.run_for_job(Job('HP INC'))

        assert result['success'] is True
        assert result['batches_queued'] == 2
        assert result['failed_batches'] == 1
        assert sorted(SyncBatch.objects.values_list('batch_index', flat=True)) == [1, 3]


# ---------------------------------------------------------------------------
# run_scheduled / run_full_sync
# ---------------------------------------------------------------------------

@pytest.mark.django_db
class TestRunScheduled:
    def test_uses_next_job(self):
        client = FakeClient(catalog_of(3))
        result = make_orchestrator(client, jobs=[Job('A'), Job('B')]).run_scheduled()

        assert result['success'] is True
        assert result['job']['brand'] == 'A'
        assert result['results']['batches_queued'] == 1

    def test_failing_brand_does_not_stall_rotation(self):
        client = FakeClient(exc=FetchError('timeout'))
        orchestrator = make_orchestrator(client, jobs=[Job('A'), Job('B')])

        orchestrator.run_scheduled()
        orchestrator.run_scheduled()

        assert [brand for brand, _ in client.calls] == ['A', 'B']

    def test_no_jobs(self):
        result = make_orchestrator(FakeClient(), jobs=[]).run_scheduled()
        assert result == {'success': False, 'error': 'No jobs available'}

    def test_full_sync_queues_every_job(self):
        client = FakeClient(catalog_of(2))
        result = make_orchestrator(client, jobs=[Job('A'), Job('B'), Job('C')]).run_full_sync()

        assert result['success'] is True
        assert result['jobs_processed'] == 3
        assert SyncBatch.objects.count() == 3


# ---------------------------------------------------------------------------
# run_brand_synchronously
# ---------------------------------------------------------------------------

@pytest.mark.django_db
class TestRunBrandSynchronously:
    def test_upserts_inline_without_queue(self):
        seed_defaults()
        client = FakeClient(catalog_of(2) + [{'Name': 'no sku'}])

        result = make_orchestrator(client).run_brand_synchronously('APPLE')

        assert result['success'] is True
        assert result['catalog_count'] == 3
        assert result['processed_count'] == 3
        assert result['created'] == 2
        assert result['errors'] == 1
        assert result['error_details'][0]['index'] == 2
        assert client.calls == [('APPLE', [1, 7])]
        assert StoreProduct.objects.count() == 2
        assert SyncBatch.objects.count() == 0
        assert activity_types() == [SYNC_COMPLETE]

    def test_brand_by_id(self):
        seed_defaults()
        brand = Brand.objects.get(name='ASUS')
        client = FakeClient([])

        result = make_orchestrator(client).run_brand_synchronously(brand.pk)

        assert result['brand'] == 'ASUS'
        assert client.calls == [('ASUS', [7])]

    def test_unknown_brand_requests_all_categories(self):
        client = FakeClient([])
        make_orchestrator(client).run_brand_synchronously('ACME')
        assert client.calls == [('ACME', [])]

    def test_missing_brand_id(self):
        result = make_orchestrator(FakeClient()).run_brand_synchronously(4242)
        assert result['success'] is False
        assert 'not found' in result['error']

    def test_fetch_failure_reported(self):
        result = make_orchestrator(FakeClient(exc=FetchError('HTTP 502'))).run_brand_synchronously('DELL')

        assert result['success'] is False
        assert result['error_type'] == 'api'
        assert activity_types() == [SYNC_ERROR]


# ---------------------------------------------------------------------------
# check_brand_completion
# ---------------------------------------------------------------------------

@pytest.mark.django_db
class TestBrandCompletion:
    def test_detected_exactly_once(self):
        orchestrator = make_orchestrator(FakeClient(catalog_of(3)))
        orchestrator.batch_size = 2
        orchestrator.run_for_job(Job('HP INC'))
        processor = BatchProcessor(orchestrator.queue, orchestrator.upserter, orchestrator.progress)
        first, second = SyncBatch.objects.order_by('batch_index').values_list('pk', flat=True)

        processor.process(first)
        assert orchestrator.check_brand_completion('HP INC')['completed'] is False

        processor.process(second)
        done = orchestrator.check_brand_completion('HP INC')
        assert done['completed'] is True
        assert done['progress']['completed_batches'] == 2
        assert orchestrator.progress.get('HP INC') is None

        again = orchestrator.check_brand_completion('HP INC')
        assert again['completed'] is True
        assert again['progress'] is None
        assert activity_types().count(BRAND_COMPLETE) == 1

    def test_processing_batch_blocks_completion(self):
        orchestrator = make_orchestrator(FakeClient(catalog_of(1)))
        orchestrator.run_for_job(Job('DELL'))
        orchestrator.queue.claim_pending(1)

        assert orchestrator.check_brand_completion('DELL')['completed'] is False
