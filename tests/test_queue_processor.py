"""Tests for the Sync Queue Processor and the queue worker."""

from datetime import datetime, timedelta, timezone

import pytest

from services.stock_service.exceptions import StoreUnavailableError
from services.stock_service.models import QueueEntryState, StockTransaction
from services.stock_service.queue_processor import QueueWorker, SyncQueueProcessor
from services.stock_service.repository import InventoryRepository, StockChange
from shared.database import init_db, make_engine, make_session_factory

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def enqueue(db):
    """Commit a pending queue entry and return its id."""

    def _enqueue(product_id="p1", quantity=5, action="reduce", attempts=0, minutes=0):
        entry = InventoryRepository(db).enqueue_intent(product_id, quantity, action)
        entry.attempts = attempts
        entry.timestamp = BASE_TIME + timedelta(minutes=minutes)
        db.commit()
        return entry.id

    return _enqueue


@pytest.fixture
def always_unavailable(monkeypatch):
    def unavailable(self, product_id, quantity, action):
        raise StoreUnavailableError("connection reset")

    monkeypatch.setattr(InventoryRepository, "apply_stock_delta", unavailable)


class TestSelection:
    """Tests for which entries a run picks up."""

    def test_attempts_boundary(self, db, make_product, enqueue):
        make_product("p1", stock=10)
        included = enqueue(attempts=4)
        excluded = enqueue(attempts=5)

        batch = SyncQueueProcessor(db).fetch_batch()

        ids = [item.queue_id for item in batch]
        assert included in ids
        assert excluded not in ids

    def test_orders_by_attempts_then_timestamp(self, db, make_product, enqueue):
        make_product("p1", stock=100)
        retried = enqueue(attempts=1, minutes=0)
        newer = enqueue(attempts=0, minutes=10)
        older = enqueue(attempts=0, minutes=5)

        batch = SyncQueueProcessor(db).fetch_batch()

        assert [item.queue_id for item in batch] == [older, newer, retried]

    def test_batch_size_limit(self, db, make_product, enqueue):
        make_product("p1", stock=100)
        for i in range(25):
            enqueue(quantity=1, minutes=i)

        result = SyncQueueProcessor(db, batch_size=20).process_queue()

        assert result.successful_count == 20
        assert len(SyncQueueProcessor(db).fetch_batch()) == 5

    def test_processed_and_dead_lettered_are_skipped(self, db, repo, make_product, enqueue):
        make_product("p1", stock=10)
        processed = enqueue()
        dead = enqueue()
        repo.claim_entry(processed)
        repo.dead_letter(dead, "Product not found")
        db.commit()

        assert SyncQueueProcessor(db).fetch_batch() == []

    def test_empty_queue(self, db):
        result = SyncQueueProcessor(db).process_queue()

        assert result.to_dict() == {
            "success": True,
            "message": "No pending items in the queue",
            "successful": 0,
            "failed": 0,
            "skipped": 0,
            "details": {"success": [], "failed": [], "skipped": []},
        }


class TestProcessing:
    """Tests for applying queued intents."""

    def test_applies_entry_and_writes_audit(self, db, repo, make_product, enqueue):
        make_product("p1", stock=10)
        entry_id = enqueue(quantity=3)

        result = SyncQueueProcessor(db).process_queue()

        assert result.successful_count == 1
        detail = result.success[0]
        assert detail["queueId"] == entry_id
        assert detail["productId"] == "p1"
        assert detail["previousStock"] == 10
        assert detail["newStock"] == 7
        assert detail["attempts"] == 1

        entry = repo.get_queue_entry(entry_id, refresh=True)
        assert entry.state == QueueEntryState.PROCESSED.value
        assert entry.processed_at is not None
        assert entry.last_attempt is not None

        audit = repo.audit_for_product("p1")
        assert len(audit) == 1
        assert audit[0].request_id == entry_id
        assert audit[0].from_queue is True

    def test_add_action(self, db, repo, make_product, enqueue):
        make_product("p1", stock=10)
        enqueue(quantity=4, action="add")

        SyncQueueProcessor(db).process_queue()

        assert repo.get_product("p1", refresh=True).stock == 14

    def test_missing_product_is_dead_lettered(self, db, repo, enqueue, notifier, producer):
        entry_id = enqueue(product_id="ghost")

        result = SyncQueueProcessor(db, notifier=notifier).process_queue()

        assert result.failed_count == 1
        assert result.failed[0]["reason"] == "Product not found"
        entry = repo.get_queue_entry(entry_id, refresh=True)
        assert entry.state == QueueEntryState.DEAD_LETTERED.value
        assert entry.last_error == "Product not found"
        assert entry.attempts == 1

        topic, event = producer.publish.call_args.args
        assert topic == "dlq.events"
        assert event.payload["queueId"] == entry_id

        # Permanent failure: never picked up again
        assert SyncQueueProcessor(db).fetch_batch() == []

    def test_already_audited_entry_is_not_applied_again(self, db, repo, make_product, enqueue):
        make_product("p1", stock=10)
        entry_id = enqueue(quantity=5)
        repo.add_audit(
            StockChange("p1", "Product p1", 5, "reduce", previous_stock=10, new_stock=5),
            entry_id,
            from_queue=False,
        )
        db.commit()

        result = SyncQueueProcessor(db).process_queue()

        assert result.success[0]["alreadyApplied"] is True
        assert repo.get_product("p1", refresh=True).stock == 10
        assert repo.get_queue_entry(entry_id, refresh=True).state == QueueEntryState.PROCESSED.value

    def test_failure_keeps_entry_pending(self, db, repo, make_product, enqueue, always_unavailable):
        make_product("p1", stock=10)
        entry_id = enqueue(attempts=3)

        result = SyncQueueProcessor(db).process_queue()

        assert result.failed_count == 1
        entry = repo.get_queue_entry(entry_id, refresh=True)
        assert entry.state == QueueEntryState.PENDING.value
        assert entry.attempts == 4
        assert entry.last_error == "connection reset"

    def test_fifth_failure_dead_letters(self, db, repo, make_product, enqueue, always_unavailable, notifier, producer):
        make_product("p1", stock=10)
        entry_id = enqueue(attempts=4)

        SyncQueueProcessor(db, notifier=notifier).process_queue()

        entry = repo.get_queue_entry(entry_id, refresh=True)
        assert entry.attempts == 5
        assert entry.state == QueueEntryState.DEAD_LETTERED.value

        topic, event = producer.publish.call_args.args
        assert topic == "dlq.events"
        assert event.retry_count == 5

    def test_one_failure_does_not_stop_the_batch(self, db, repo, make_product, enqueue):
        make_product("p1", stock=10)
        enqueue(product_id="ghost", minutes=0)
        enqueue(quantity=2, minutes=1)

        result = SyncQueueProcessor(db).process_queue()

        assert result.failed_count == 1
        assert result.successful_count == 1
        assert repo.get_product("p1", refresh=True).stock == 8

    def test_succeeds_on_third_pass_after_two_failures(self, db, repo, make_product, enqueue, monkeypatch):
        make_product("p1", stock=10)
        entry_id = enqueue(quantity=5)

        original = InventoryRepository.apply_stock_delta
        calls = {"count": 0}

        def flaky(self, product_id, quantity, action):
            calls["count"] += 1
            if calls["count"] <= 2:
                raise StoreUnavailableError("connection reset")
            return original(self, product_id, quantity, action)

        monkeypatch.setattr(InventoryRepository, "apply_stock_delta", flaky)

        processor = SyncQueueProcessor(db)
        assert processor.process_queue().failed_count == 1
        assert processor.process_queue().failed_count == 1
        assert repo.get_queue_entry(entry_id, refresh=True).attempts == 2

        result = processor.process_queue()

        assert result.successful_count == 1
        entry = repo.get_queue_entry(entry_id, refresh=True)
        assert entry.attempts == 3
        assert entry.processed
        assert repo.get_product("p1", refresh=True).stock == 5
        assert len(repo.audit_for_product("p1")) == 1

    def test_queue_events_marked_from_queue(self, db, make_product, enqueue, notifier, producer):
        make_product("p1", stock=50)
        enqueue(quantity=1)

        SyncQueueProcessor(db, notifier=notifier).process_queue()

        topic, event = producer.publish.call_args.args
        assert topic == "inventory.stock_updated"
        assert event.from_queue is True


class TestConcurrentRuns:
    """Two processor runs racing on the same entries."""

    @pytest.fixture
    def file_engine(self, tmp_path):
        engine = make_engine(f"sqlite:///{tmp_path / 'race.db'}")
        init_db(engine)
        yield engine
        engine.dispose()

    def test_entry_is_applied_at_most_once(self, file_engine):
        factory = make_session_factory(file_engine)
        session_a, session_b = factory(), factory()
        try:
            repo_a = InventoryRepository(session_a)
            repo_a.create_product("Product p1", 10, product_id="p1")
            repo_a.enqueue_intent("p1", 5, "reduce")
            session_a.commit()

            processor_a = SyncQueueProcessor(session_a)
            stale_batch = processor_a.fetch_batch()
            result_b = SyncQueueProcessor(session_b).process_queue()
            result_a = processor_a.process_batch(stale_batch)

            assert result_b.successful_count == 1
            assert result_a.successful_count == 0
            assert len(result_a.skipped) == 1

            check = factory()
            assert InventoryRepository(check).get_product("p1").stock == 5
            assert check.query(StockTransaction).count() == 1
            check.close()
        finally:
            session_a.close()
            session_b.close()

    def test_second_claim_loses(self, file_engine):
        factory = make_session_factory(file_engine)
        session_a, session_b = factory(), factory()
        try:
            entry = InventoryRepository(session_a).enqueue_intent("p1", 1, "reduce")
            entry_id = entry.id
            session_a.commit()

            assert InventoryRepository(session_a).claim_entry(entry_id)
            session_a.commit()
            assert not InventoryRepository(session_b).claim_entry(entry_id)
            session_b.rollback()
        finally:
            session_a.close()
            session_b.close()

    @pytest.mark.parametrize("attempts", [1, 5])
    def test_failure_does_not_overwrite_a_concurrent_claim(self, file_engine, attempts):
        factory = make_session_factory(file_engine)
        session_a, session_b = factory(), factory()
        try:
            entry = InventoryRepository(session_a).enqueue_intent("p1", 1, "reduce")
            entry.attempts = attempts
            entry_id = entry.id
            session_a.commit()

            repo_b = InventoryRepository(session_b)
            assert repo_b.get_queue_entry(entry_id).state == QueueEntryState.PENDING.value
            session_b.commit()

            assert InventoryRepository(session_a).claim_entry(entry_id)
            session_a.commit()

            entry_b = repo_b.record_failure(entry_id, "connection reset", max_attempts=5)
            session_b.commit()

            assert entry_b.state == QueueEntryState.PROCESSED.value
            assert entry_b.last_error is None
        finally:
            session_a.close()
            session_b.close()


class TestQueueWorker:
    """Tests for the background worker."""

    def test_run_once_uses_its_own_session(self, session_factory, db, repo, make_product, enqueue):
        make_product("p1", stock=10)
        entry_id = enqueue(quantity=2)

        result = QueueWorker(session_factory, poll_interval=60).run_once()

        assert result.successful_count == 1
        assert repo.get_queue_entry(entry_id, refresh=True).processed

    def test_start_and_stop(self, session_factory):
        worker = QueueWorker(session_factory, poll_interval=60)

        thread = worker.start()
        worker.stop(timeout=5)

        assert not thread.is_alive()
