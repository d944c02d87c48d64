import logging

from shared.events import (
    DLQEvent,
    InventoryDepletedEvent,
    InventoryLowEvent,
    StockRecalculatedEvent,
    StockUpdatedEvent,
)

from .repository import StockChange

logger = logging.getLogger(__name__)


class StockChangeNotifier:
    """Fans committed stock changes out to the local stock cache and to Kafka.

    Called only after the change is committed. Publishing is best effort: a
    broker outage is logged and never undoes or fails the stock change.
    """

    def __init__(self, producer=None, cache=None, low_stock_threshold: int = 5):
        self.producer = producer
        self.cache = cache
        self.low_stock_threshold = low_stock_threshold

    def stock_changed(self, change: StockChange, request_id: str, from_queue: bool = False) -> None:
        self._invalidate(change.product_id)

        self._publish(
            StockUpdatedEvent(
                correlation_id=request_id,
                product_id=change.product_id,
                quantity=change.quantity,
                action=change.action,
                previous_stock=change.previous_stock,
                new_stock=change.new_stock,
                from_queue=from_queue,
            )
        )

        if change.new_stock == 0 and change.previous_stock > 0:
            self._publish(InventoryDepletedEvent(correlation_id=request_id, product_id=change.product_id))
        elif 0 < change.new_stock < self.low_stock_threshold:
            self._publish(
                InventoryLowEvent(
                    correlation_id=request_id,
                    product_id=change.product_id,
                    current_stock=change.new_stock,
                    threshold=self.low_stock_threshold,
                )
            )

    def entry_dead_lettered(self, entry_id: str, product_id: str, quantity: int, action: str,
                            attempts: int, reason: str) -> None:
        self._publish(
            DLQEvent(
                correlation_id=entry_id,
                error_reason=reason,
                retry_count=attempts,
                product_id=product_id,
                payload={
                    "queueId": entry_id,
                    "productId": product_id,
                    "quantity": quantity,
                    "action": action,
                },
            )
        )

    def stock_recalculated(self, report) -> None:
        updated = [d.product_id for d in report.discrepancies]
        for product_id in updated:
            self._invalidate(product_id)

        self._publish(
            StockRecalculatedEvent(
                correlation_id=report.run_id,
                updated_products=updated,
                discrepancy_count=len(report.discrepancies),
                invalid_product_ids=sorted(report.invalid_product_ids),
                transactions_without_items=report.transactions_without_items,
            )
        )

    def _invalidate(self, product_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate(product_id)

    def _publish(self, event) -> None:
        if self.producer is None:
            return
        try:
            self.producer.publish(event.event_type, event)
        except Exception as e:
            logger.error(
                f"Failed to publish {event.event_type}: {e}",
                extra={"event_type": event.event_type, "correlation_id": event.correlation_id},
            )
