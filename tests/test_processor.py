import logging

import pytest
from celery.exceptions import SoftTimeLimitExceeded

from catalog_sync.batch_queue import BatchQueue
from catalog_sync.errors import NetworkError, UpsertError, ValidationError
from catalog_sync.models import BatchStatus, StoreProduct, SyncBatch
from catalog_sync.processor import BatchProcessor, ResourceGuard, upsert_records
from catalog_sync.progress import ProgressTracker
from catalog_sync.store import CREATED, StoreProductUpserter, UpsertResult

PRODUCTS = [
    {'Sku': 'A-1', 'Name': 'Mouse', 'precio': 50000, 'Quantity': 10},
    {'Sku': 'A-2', 'Name': 'Teclado', 'precio': 90000, 'Quantity': 0},
]


class FakeUpserter:
    """Records every call; raises `exc` for the brands in `fail_brands` and
    an UpsertError for the SKUs in `bad_skus`."""

    def __init__(self, exc=None, fail_brands=None, bad_skus=()):
        self.exc = exc
        self.fail_brands = fail_brands
        self.bad_skus = set(bad_skus)
        self.calls = []

    def upsert(self, record, brand):
        self.calls.append((brand, record.get('Sku')))
        if self.exc is not None and (self.fail_brands is None or brand in self.fail_brands):
            raise self.exc
        if record.get('Sku') in self.bad_skus:
            raise UpsertError('bad record', sku=record['Sku'])
        return UpsertResult(action=CREATED, product_id=len(self.calls), sku=record['Sku'])


@pytest.fixture()
def queue():
    return BatchQueue()


def make_processor(queue, upserter, **kwargs):
    return BatchProcessor(queue, upserter, ProgressTracker(), **kwargs)


def enqueue(queue, brand='HP INC', products=PRODUCTS, index=1, total=1):
    return queue.enqueue(brand, [], products, index, total)


# ---------------------------------------------------------------------------
# Successful processing
# ---------------------------------------------------------------------------

@pytest.mark.django_db
class TestProcessSuccess:
    def test_batch_completed_and_counted(self, queue):
        batch_id = enqueue(queue)
        result = make_processor(queue, FakeUpserter()).process(batch_id)

        assert result.success is True
        assert (result.total, result.created, result.errors) == (2, 2, 0)
        assert result.attempts == 1
        assert SyncBatch.objects.get(pk=batch_id).status == BatchStatus.COMPLETED

    def test_progress_updated(self, queue):
        batch_id = enqueue(queue, index=1, total=2)
        make_processor(queue, FakeUpserter()).process(batch_id)

        progress = ProgressTracker().get('HP INC')
        assert progress['completed_batches'] == 1
        assert progress['total_batches'] == 2
        assert progress['created'] == 2
        assert progress['completion_percentage'] == 50.0

    def test_record_errors_do_not_abort_batch(self, queue):
        batch_id = enqueue(queue)
        result = make_processor(queue, FakeUpserter(bad_skus={'A-1'})).process(batch_id)

        assert result.success is True
        assert result.created == 1
        assert result.errors == 1
        assert result.details == [{'index': 0, 'sku': 'A-1', 'error': 'bad record'}]

    def test_reprocessing_does_not_duplicate_products(self, queue):
        processor = make_processor(queue, StoreProductUpserter())
        batch_id = enqueue(queue)
        processor.process(batch_id)

        # Simulate a worker crash after the upserts but before completion.
        SyncBatch.objects.filter(pk=batch_id).update(status=BatchStatus.PENDING)
        result = processor.process(batch_id)

        assert result.success is True
        assert result.created == 0
        assert result.updated == 2
        assert StoreProduct.objects.count() == 2


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------

@pytest.mark.django_db
class TestProcessFailure:
    def test_network_errors_retried_until_max_attempts(self, queue):
        batch_id = enqueue(queue)
        processor = make_processor(queue, FakeUpserter(exc=NetworkError('connection reset')))

        statuses, retryable = [], []
        for _ in range(3):
            result = processor.process(batch_id)
            statuses.append(SyncBatch.objects.get(pk=batch_id).status)
            retryable.append(result.retryable)

        assert statuses == [BatchStatus.PENDING, BatchStatus.PENDING, BatchStatus.FAILED]
        assert retryable == [True, True, False]
        batch = SyncBatch.objects.get(pk=batch_id)
        assert batch.attempts == batch.max_attempts == 3
        assert batch.error_message.endswith('(max attempts reached or non-retryable error)')

    def test_validation_error_fails_immediately(self, queue):
        batch_id = enqueue(queue)
        result = make_processor(queue, FakeUpserter(exc=ValidationError('bad mapping'))).process(batch_id)

        batch = SyncBatch.objects.get(pk=batch_id)
        assert result.error_type == 'validation'
        assert result.retryable is False
        assert batch.status == BatchStatus.FAILED
        assert batch.attempts == 1

    @pytest.mark.parametrize('payload', ['{not json', '{"Sku": "A-1"}'])
    def test_malformed_payload_fails_without_retry(self, queue, payload):
        batch_id = enqueue(queue)
        SyncBatch.objects.filter(pk=batch_id).update(payload=payload)
        upserter = FakeUpserter()

        result = make_processor(queue, upserter).process(batch_id)

        assert result.error_type == 'validation'
        assert SyncBatch.objects.get(pk=batch_id).status == BatchStatus.FAILED
        assert upserter.calls == []

    def test_unexpected_exception_is_retryable(self, queue):
        batch_id = enqueue(queue)
        result = make_processor(queue, FakeUpserter(exc=KeyError('Name'))).process(batch_id)

        assert result.error_type == 'general'
        assert result.retryable is True
        assert SyncBatch.objects.get(pk=batch_id).status == BatchStatus.PENDING

    def test_memory_ceiling_puts_batch_back(self, queue):
        batch_id = enqueue(queue)
        upserter = FakeUpserter()
        result = make_processor(queue, upserter, memory_limit_mb=0.001).process(batch_id)

        assert result.error_type == 'memory'
        assert result.retryable is True
        assert upserter.calls == []
        assert SyncBatch.objects.get(pk=batch_id).status == BatchStatus.PENDING

    def test_missing_batch(self, queue):
        result = make_processor(queue, FakeUpserter()).process(99999)

        assert result.success is False
        assert result.error_type == 'validation'

    def test_completed_batch_is_not_reprocessed(self, queue):
        batch_id = enqueue(queue)
        processor = make_processor(queue, FakeUpserter())
        processor.process(batch_id)

        result = processor.process(batch_id)

        assert result.success is False
        assert 'not in a processable state' in result.error
        assert SyncBatch.objects.get(pk=batch_id).attempts == 1

    def test_failed_batch_can_be_executed_manually(self, queue):
        batch_id = enqueue(queue)
        make_processor(queue, FakeUpserter(exc=ValidationError('bad'))).process(batch_id)

        result = make_processor(queue, FakeUpserter()).process(batch_id)

        assert result.success is True
        assert result.attempts == 2

    def test_failed_batch_rejected_when_not_allowed(self, queue):
        batch_id = enqueue(queue)
        make_processor(queue, FakeUpserter(exc=ValidationError('bad'))).process(batch_id)

        result = make_processor(queue, FakeUpserter()).process(batch_id, allow_failed=False)

        assert result.success is False
        assert SyncBatch.objects.get(pk=batch_id).status == BatchStatus.FAILED


# ---------------------------------------------------------------------------
# process_pending
# ---------------------------------------------------------------------------

@pytest.mark.django_db
class TestProcessPending:
    def test_nothing_pending(self, queue):
        result = make_processor(queue, FakeUpserter()).process_pending(3)
        assert result == {'success': True, 'processed': 0, 'results': []}

    def test_one_failure_does_not_stop_the_loop(self, queue):
        failing = enqueue(queue, brand='DELL')
        passing = enqueue(queue, brand='HP INC')
        upserter = FakeUpserter(exc=NetworkError('timeout'), fail_brands={'DELL'})

        result = make_processor(queue, upserter).process_pending(5)

        assert result['processed'] == 2
        by_id = {r['batch_id']: r for r in result['results']}
        assert by_id[failing]['success'] is False
        assert by_id[passing]['success'] is True

    def test_limit_respected(self, queue):
        for index in (1, 2, 3):
            enqueue(queue, index=index, total=3)

        result = make_processor(queue, FakeUpserter()).process_pending(2)

        assert result['processed'] == 2
        assert SyncBatch.objects.filter(status=BatchStatus.PENDING).count() == 1

    def test_soft_time_limit_propagates_and_releases_unstarted(self, queue):
        interrupted = enqueue(queue, brand='DELL')
        waiting = enqueue(queue, brand='HP INC')
        upserter = FakeUpserter(exc=SoftTimeLimitExceeded(), fail_brands={'DELL'})

        with pytest.raises(SoftTimeLimitExceeded):
            make_processor(queue, upserter).process_pending(2)

        interrupted_batch = SyncBatch.objects.get(pk=interrupted)
        assert interrupted_batch.status == BatchStatus.PENDING
        assert interrupted_batch.attempts == 1
        waiting_batch = SyncBatch.objects.get(pk=waiting)
        assert waiting_batch.status == BatchStatus.PENDING
        assert waiting_batch.attempts == 0
        assert [call[0] for call in upserter.calls] == ['DELL']

    def test_processing_stats(self, queue):
        make_processor(queue, FakeUpserter()).process(enqueue(queue, index=1, total=2))
        enqueue(queue, index=2, total=2)

        stats = make_processor(queue, FakeUpserter()).get_processing_stats()

        assert stats['queue_stats']['pending'] == 1
        assert stats['total_active_brands'] == 1
        assert 'HP INC' in stats['active_brands']


# ---------------------------------------------------------------------------
# Record loop and resource guard
# ---------------------------------------------------------------------------

class TestUpsertRecords:
    def test_counts_and_details(self):
        results = upsert_records(PRODUCTS + [{'Sku': 'BAD'}], 'HP INC', FakeUpserter(bad_skus={'BAD'}))

        assert (results.total, results.created, results.errors) == (3, 2, 1)
        assert results.details[0]['index'] == 2

    def test_infrastructure_error_propagates(self):
        with pytest.raises(NetworkError):
            upsert_records(PRODUCTS, 'HP INC', FakeUpserter(exc=NetworkError('down')))


class TestResourceGuard:
    def test_time_budget_warns_once(self, caplog):
        caplog.set_level(logging.WARNING, logger='catalog_sync.processor')
        guard = ResourceGuard(time_budget=10)
        guard._started -= 20

        guard.check('batch 1')
        guard.check('batch 1')

        assert guard.over_budget is True
        assert caplog.text.count('Time budget') == 1

    def test_no_limits_never_raises(self):
        guard = ResourceGuard()
        guard.check()
        assert guard.over_budget is False
