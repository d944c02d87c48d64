"""Tests for stock event fan-out."""

from types import SimpleNamespace

from services.stock_service.notifications import StockChangeNotifier
from services.stock_service.recalculator import Discrepancy
from services.stock_service.repository import StockChange


def change(previous, new, action="reduce"):
    return StockChange("p1", "Linen Shirt", abs(previous - new) or 1, action, previous, new)


class TestStockChangeNotifier:
    def test_without_producer_only_invalidates(self, stock_cache):
        stock_cache.set("p1", {"stock": 9}, cached_at=0)

        StockChangeNotifier(cache=stock_cache).stock_changed(change(9, 8), "req-1")

        assert stock_cache.get("p1") is None

    def test_stock_updated_only_above_threshold(self, notifier, producer):
        notifier.stock_changed(change(20, 10), "req-1")

        producer.publish.assert_called_once()
        topic, event = producer.publish.call_args.args
        assert topic == "inventory.stock_updated"
        assert event.correlation_id == "req-1"

    def test_low_stock(self, notifier, producer):
        notifier.stock_changed(change(6, 4), "req-1")

        topic, event = producer.publish.call_args.args
        assert topic == "inventory.low"
        assert event.current_stock == 4
        assert event.threshold == 5

    def test_depleted_only_on_transition_to_zero(self, notifier, producer):
        notifier.stock_changed(change(2, 0), "req-1")
        notifier.stock_changed(change(0, 0), "req-2")

        topics = [call.args[0] for call in producer.publish.call_args_list]
        assert topics.count("inventory.depleted") == 1

    def test_restock_above_threshold_is_not_low(self, notifier, producer):
        notifier.stock_changed(change(0, 10, action="add"), "req-1")

        topics = [call.args[0] for call in producer.publish.call_args_list]
        assert topics == ["inventory.stock_updated"]

    def test_dead_letter_event(self, notifier, producer):
        notifier.entry_dead_lettered("q1", "p1", 2, "reduce", attempts=5, reason="connection reset")

        topic, event = producer.publish.call_args.args
        assert topic == "dlq.events"
        assert event.retry_count == 5
        assert event.error_reason == "connection reset"
        assert event.payload == {"queueId": "q1", "productId": "p1", "quantity": 2, "action": "reduce"}

    def test_recalculated_event(self, notifier, producer):
        report = SimpleNamespace(
            run_id="run-1",
            discrepancies=[Discrepancy("p1", "Linen Shirt", 10, 8, 10, 0)],
            invalid_product_ids={"ghost"},
            transactions_without_items=2,
        )

        notifier.stock_recalculated(report)

        topic, event = producer.publish.call_args.args
        assert topic == "inventory.recalculated"
        assert event.updated_products == ["p1"]
        assert event.invalid_product_ids == ["ghost"]
        assert event.transactions_without_items == 2

    def test_publish_errors_are_logged_not_raised(self, notifier, producer, caplog):
        producer.publish.side_effect = RuntimeError("broker down")

        notifier.stock_changed(change(9, 8), "req-1")

        assert "Failed to publish inventory.stock_updated" in caplog.text
