import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import (
    InvalidStockRequestError,
    ProductNotFoundError,
    StoreUnavailableError,
    TransactionNotFoundError,
)
from .models import QueueEntryState, StockSyncQueueEntry
from .recalculator import DEFAULT_PAGE_SIZE, RecalculationReport, RecoveryRecalculator
from .repository import InventoryRepository

logger = logging.getLogger(__name__)


class StockAdmin:
    """Operator repairs of the transaction log and the dead-letter queue.

    Every change to the transaction log commits first and is then followed by a
    full recalculation, so stock always reflects the repaired history.
    """

    def __init__(self, db: Session, notifier=None, page_size: int = DEFAULT_PAGE_SIZE):
        self.db = db
        self.repo = InventoryRepository(db)
        self.notifier = notifier
        self.page_size = page_size

    def delete_transaction(self, transaction_id: str) -> Dict[str, Any]:
        """Delete one transaction, then recalculate stock."""
        transaction = self.repo.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)

        self._commit(lambda: self.repo.delete_transactions([transaction_id]), "delete transaction")
        logger.info(f"Deleted transaction {transaction_id}")

        report = self._recalculate()
        return {"deleted": [transaction_id], "recalculation": report.to_dict()}

    def delete_invalid_transactions(self) -> Dict[str, Any]:
        """Delete every transaction with no items or with a dangling product id."""
        analysis = self._recalculator().analyze()
        invalid_ids = list(analysis.transaction_ids_without_items)
        for transaction_id in analysis.transaction_ids_with_dangling_items:
            if transaction_id not in invalid_ids:
                invalid_ids.append(transaction_id)

        if not invalid_ids:
            logger.info("No invalid transactions to delete")
            return {"deleted": [], "recalculation": analysis.to_dict()}

        deleted = self._commit(lambda: self.repo.delete_transactions(invalid_ids), "delete invalid transactions")
        logger.info(f"Deleted {deleted} invalid transactions")

        report = self._recalculate()
        return {"deleted": invalid_ids, "recalculation": report.to_dict()}

    def remap_item(self, transaction_id: str, from_product_id: str, to_product_id: str) -> Dict[str, Any]:
        """Point a transaction's items at a different, existing product, then recalculate."""
        if not from_product_id or not to_product_id:
            raise InvalidStockRequestError("fromProductId and toProductId are required")

        transaction = self.repo.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)

        if self.repo.get_product(to_product_id) is None:
            raise ProductNotFoundError(to_product_id)

        items = transaction.items if isinstance(transaction.items, list) else []
        remapped = 0
        new_items = []
        for item in items:
            if isinstance(item, dict) and item.get("id") == from_product_id:
                item = {**item, "id": to_product_id}
                remapped += 1
            new_items.append(item)

        if remapped == 0:
            raise InvalidStockRequestError(
                f"Transaction {transaction_id} has no item for product {from_product_id}"
            )

        self._commit(lambda: self.repo.replace_transaction_items(transaction, new_items), "remap transaction items")
        logger.info(
            f"Remapped {remapped} items of {transaction_id} from {from_product_id} to {to_product_id}",
            extra={"product_id": to_product_id},
        )

        report = self._recalculate()
        return {
            "transactionId": transaction_id,
            "remappedItems": remapped,
            "recalculation": report.to_dict(),
        }

    def list_queue(self, state: Optional[str] = None, limit: int = 100) -> List[StockSyncQueueEntry]:
        if state is not None:
            try:
                state = QueueEntryState(state).value
            except ValueError:
                raise InvalidStockRequestError(f"Unknown queue state {state!r}")
        return self.repo.list_queue_entries(state=state, limit=limit)

    def requeue(self, entry_id: str) -> StockSyncQueueEntry:
        """Send a dead-lettered entry back to the processor."""
        return self._commit(lambda: self.repo.requeue(entry_id), "requeue stock sync entry")

    def _commit(self, operation, description: str):
        try:
            result = operation()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to {description}: {e}")
            raise StoreUnavailableError(f"Failed to {description}") from e
        except Exception:
            self.db.rollback()
            raise
        return result

    def _recalculator(self) -> RecoveryRecalculator:
        return RecoveryRecalculator(self.db, notifier=self.notifier, page_size=self.page_size)

    def _recalculate(self) -> RecalculationReport:
        return self._recalculator().recalculate(apply=True)
