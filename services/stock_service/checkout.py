import logging
from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import ProductNotFoundError, StoreUnavailableError
from .models import StockAction
from .repository import InventoryRepository
from .stock_engine import DecrementEngine

logger = logging.getLogger(__name__)


class CheckoutRecorder:
    """Logs a checkout transaction, then decrements stock for each item.

    The transaction is committed before any stock is touched; it is the
    ground truth for recalculation and is kept whatever the decrements do.
    """

    def __init__(self, db: Session, notifier=None):
        self.db = db
        self.repo = InventoryRepository(db)
        self.engine = DecrementEngine(db, notifier=notifier)

    def record_checkout(self, items: List[Dict[str, Any]], **fields) -> Dict[str, Any]:
        try:
            transaction = self.repo.create_transaction(items, **fields)
            transaction_id = transaction.id
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record checkout transaction: {e}")
            raise StoreUnavailableError("Could not record checkout transaction") from e

        results = [self._decrement(transaction_id, item) for item in items]
        logger.info(f"Checkout {transaction_id} recorded with {len(items)} items")
        return {"transactionId": transaction_id, "status": "initiated", "items": results}

    def _decrement(self, transaction_id: str, item: Dict[str, Any]) -> Dict[str, Any]:
        product_id = item["id"]
        quantity = item["quantity"]
        result = {"productId": product_id, "quantity": quantity}

        try:
            outcome = self.engine.sync_stock(product_id, quantity, StockAction.REDUCE.value)
        except ProductNotFoundError:
            logger.warning(
                f"Checkout {transaction_id} references unknown product {product_id}",
                extra={"product_id": product_id},
            )
            result["status"] = "product_not_found"
            return result
        except StoreUnavailableError as e:
            logger.error(
                f"Checkout {transaction_id}: stock intent for {product_id} not recorded: {e}",
                extra={"product_id": product_id},
            )
            result["status"] = "failed"
            return result

        result["requestId"] = outcome.request_id
        if outcome.applied:
            result.update(status="applied", previousStock=outcome.previous_stock, newStock=outcome.new_stock)
        elif outcome.already_applied:
            result["status"] = "already_applied"
        else:
            result["status"] = "queued_for_retry"
        return result
