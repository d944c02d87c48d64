import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from shared.database import utcnow

from .exceptions import (
    ConcurrentUpdateError,
    InvalidQueueTransitionError,
    ProductNotFoundError,
    QueueEntryNotFoundError,
)
from .models import (
    Product,
    QueueEntryState,
    StockAction,
    StockSyncQueueEntry,
    StockTransaction,
    Transaction,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockChange:
    """Result of one applied stock mutation."""

    product_id: str
    product_name: str
    quantity: int
    action: str
    previous_stock: int
    new_stock: int


def compute_new_stock(current_stock: int, quantity: int, action: str) -> int:
    """New stock for a mutation; reductions are floored at zero."""
    current_stock = current_stock or 0
    if action == StockAction.REDUCE.value:
        return max(0, current_stock - quantity)
    return current_stock + quantity


class InventoryRepository:
    """Repository for products, transactions, the sync queue and the stock audit log.

    Stock is only ever written through apply_stock_delta (compare-and-swap on
    Product.version) or write_recalculated_stock (same guard). Methods flush but
    never commit; the calling service owns the unit of work.
    """

    MAX_RETRIES = 3

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def create_product(
        self,
        name: str,
        stock: int,
        price: float = 0.0,
        description: Optional[str] = None,
        category: Optional[str] = None,
        product_id: Optional[str] = None,
        base_stock: Optional[int] = None,
    ) -> Product:
        """Create a new product; the initial stock becomes its original stock."""
        product = Product(
            name=name,
            description=description,
            category=category,
            price=price,
            stock=stock,
            original_stock=stock,
            base_stock=base_stock,
        )
        if product_id:
            product.id = product_id
        self.db.add(product)
        self.db.flush()
        logger.info(f"Created product {product.id}: {name}, stock: {stock}")
        return product

    def get_product(self, product_id: str, refresh: bool = False) -> Optional[Product]:
        """Get product by ID. refresh=True bypasses values cached in the session."""
        query = self.db.query(Product)
        if refresh:
            query = query.populate_existing()
        return query.filter(Product.id == product_id).first()

    def list_products(self) -> List[Product]:
        return self.db.query(Product).order_by(Product.name, Product.id).all()

    def iter_products(self, page_size: int = 100) -> Iterator[List[Product]]:
        """Yield products in id-ordered pages (keyset pagination)."""
        return self._iter_pages(Product, page_size)

    def apply_stock_delta(self, product_id: str, quantity: int, action: str) -> StockChange:
        """
        Apply a stock mutation with optimistic locking.
        Raises ProductNotFoundError, or ConcurrentUpdateError when every retry lost a race.
        """
        for attempt in range(self.MAX_RETRIES):
            product = self.get_product(product_id, refresh=True)

            if not product:
                logger.error(f"Product {product_id} not found", extra={"product_id": product_id})
                raise ProductNotFoundError(product_id)

            previous_stock = product.stock or 0
            new_stock = compute_new_stock(previous_stock, quantity, action)
            current_version = product.version

            updated = self.db.query(Product).filter(
                and_(
                    Product.id == product_id,
                    Product.version == current_version,
                )
            ).update(
                {
                    Product.stock: new_stock,
                    Product.version: current_version + 1,
                    Product.last_updated: utcnow(),
                },
                synchronize_session=False,
            )

            if updated == 1:
                return StockChange(
                    product_id=product_id,
                    product_name=product.name,
                    quantity=quantity,
                    action=action,
                    previous_stock=previous_stock,
                    new_stock=new_stock,
                )

            logger.warning(
                f"Concurrent conflict for product {product_id}, retry {attempt + 1}/{self.MAX_RETRIES}",
                extra={"product_id": product_id},
            )

        raise ConcurrentUpdateError(
            f"Failed to update stock for {product_id} after {self.MAX_RETRIES} retries"
        )

    def write_recalculated_stock(
        self, product_id: str, expected_version: int, stock: int, original_stock: int
    ) -> bool:
        """Overwrite stock from a recalculation; False if the product changed since it was read."""
        updated = self.db.query(Product).filter(
            and_(
                Product.id == product_id,
                Product.version == expected_version,
            )
        ).update(
            {
                Product.stock: stock,
                Product.original_stock: original_stock,
                Product.version: expected_version + 1,
                Product.last_updated: utcnow(),
            },
            synchronize_session=False,
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def create_transaction(self, items: list, **fields) -> Transaction:
        """Record a checkout transaction."""
        transaction = Transaction(items=items, **fields)
        self.db.add(transaction)
        self.db.flush()
        logger.info(f"Recorded transaction {transaction.id} with {len(items) if isinstance(items, list) else 0} items")
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self.db.query(Transaction).filter(Transaction.id == transaction_id).first()

    def iter_transactions(self, page_size: int = 100) -> Iterator[List[Transaction]]:
        """Yield transactions in id-ordered pages (keyset pagination)."""
        return self._iter_pages(Transaction, page_size)

    def replace_transaction_items(self, transaction: Transaction, items: list) -> None:
        # A new list object so the JSON column is flagged as changed
        transaction.items = list(items)
        self.db.flush()

    def delete_transactions(self, transaction_ids: List[str]) -> int:
        if not transaction_ids:
            return 0
        deleted = self.db.query(Transaction).filter(
            Transaction.id.in_(transaction_ids)
        ).delete(synchronize_session=False)
        logger.info(f"Deleted {deleted} transactions")
        return deleted

    # ------------------------------------------------------------------
    # Stock sync queue
    # ------------------------------------------------------------------

    def enqueue_intent(self, product_id: str, quantity: int, action: str) -> StockSyncQueueEntry:
        """Record a pending stock mutation intent."""
        entry = StockSyncQueueEntry(
            product_id=product_id,
            quantity=quantity,
            action=action,
            state=QueueEntryState.PENDING.value,
            attempts=0,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def get_queue_entry(self, entry_id: str, refresh: bool = False) -> Optional[StockSyncQueueEntry]:
        query = self.db.query(StockSyncQueueEntry)
        if refresh:
            query = query.populate_existing()
        return query.filter(StockSyncQueueEntry.id == entry_id).first()

    def fetch_pending_entries(self, limit: int, max_attempts: int) -> List[StockSyncQueueEntry]:
        """Pending entries under the retry budget, fewest attempts and oldest first."""
        return (
            self.db.query(StockSyncQueueEntry)
            .filter(
                StockSyncQueueEntry.state == QueueEntryState.PENDING.value,
                StockSyncQueueEntry.attempts < max_attempts,
            )
            .order_by(
                StockSyncQueueEntry.attempts.asc(),
                StockSyncQueueEntry.timestamp.asc(),
                StockSyncQueueEntry.id.asc(),
            )
            .limit(limit)
            .all()
        )

    def list_queue_entries(self, state: Optional[str] = None, limit: int = 100) -> List[StockSyncQueueEntry]:
        query = self.db.query(StockSyncQueueEntry)
        if state:
            query = query.filter(StockSyncQueueEntry.state == state)
        return query.order_by(StockSyncQueueEntry.timestamp.desc()).limit(limit).all()

    def record_attempt(self, entry_id: str, max_attempts: int) -> bool:
        """Count a processing attempt; False if the entry is no longer eligible."""
        updated = self.db.query(StockSyncQueueEntry).filter(
            StockSyncQueueEntry.id == entry_id,
            StockSyncQueueEntry.state == QueueEntryState.PENDING.value,
            StockSyncQueueEntry.attempts < max_attempts,
        ).update(
            {
                StockSyncQueueEntry.attempts: StockSyncQueueEntry.attempts + 1,
                StockSyncQueueEntry.last_attempt: utcnow(),
            },
            synchronize_session=False,
        )
        return updated == 1

    def claim_entry(self, entry_id: str) -> bool:
        """Mark a pending entry processed; False if another path already moved it on."""
        updated = self.db.query(StockSyncQueueEntry).filter(
            StockSyncQueueEntry.id == entry_id,
            StockSyncQueueEntry.state == QueueEntryState.PENDING.value,
        ).update(
            {
                StockSyncQueueEntry.state: QueueEntryState.PROCESSED.value,
                StockSyncQueueEntry.processed_at: utcnow(),
                StockSyncQueueEntry.last_error: None,
            },
            synchronize_session=False,
        )
        return updated == 1

    def dead_letter(self, entry_id: str, reason: str) -> bool:
        """Move a pending entry to dead_lettered."""
        updated = self.db.query(StockSyncQueueEntry).filter(
            StockSyncQueueEntry.id == entry_id,
            StockSyncQueueEntry.state == QueueEntryState.PENDING.value,
        ).update(
            {
                StockSyncQueueEntry.state: QueueEntryState.DEAD_LETTERED.value,
                StockSyncQueueEntry.last_error: reason,
            },
            synchronize_session=False,
        )
        if updated:
            logger.warning(f"Dead-lettered stock sync entry {entry_id}: {reason}", extra={"request_id": entry_id})
        return updated == 1

    def record_failure(self, entry_id: str, reason: str, max_attempts: int) -> Optional[StockSyncQueueEntry]:
        """Store the failure reason; dead-letter the entry once its retry budget is spent."""
        pending = self.db.query(StockSyncQueueEntry).filter(
            StockSyncQueueEntry.id == entry_id,
            StockSyncQueueEntry.state == QueueEntryState.PENDING.value,
        )
        exhausted = pending.filter(StockSyncQueueEntry.attempts >= max_attempts).update(
            {
                StockSyncQueueEntry.state: QueueEntryState.DEAD_LETTERED.value,
                StockSyncQueueEntry.last_error: reason,
            },
            synchronize_session=False,
        )
        if exhausted:
            logger.warning(
                f"Stock sync entry {entry_id} exhausted {max_attempts} attempts",
                extra={"request_id": entry_id},
            )
        else:
            pending.update({StockSyncQueueEntry.last_error: reason}, synchronize_session=False)

        return self.get_queue_entry(entry_id, refresh=True)

    def requeue(self, entry_id: str) -> StockSyncQueueEntry:
        """Reset a dead-lettered entry so the processor picks it up again."""
        entry = self.get_queue_entry(entry_id, refresh=True)
        if entry is None:
            raise QueueEntryNotFoundError(entry_id)
        if entry.state != QueueEntryState.DEAD_LETTERED.value:
            raise InvalidQueueTransitionError(
                f"Only dead-lettered entries can be requeued (entry {entry_id} is {entry.state})"
            )
        entry.state = QueueEntryState.PENDING.value
        entry.attempts = 0
        entry.last_error = None
        self.db.flush()
        logger.info(f"Requeued stock sync entry {entry_id}", extra={"request_id": entry_id})
        return entry

    # ------------------------------------------------------------------
    # Stock audit log
    # ------------------------------------------------------------------

    def has_audit_for(self, request_id: str) -> bool:
        return self.db.query(StockTransaction.id).filter(
            StockTransaction.request_id == request_id
        ).first() is not None

    def add_audit(self, change: StockChange, request_id: str, from_queue: bool) -> StockTransaction:
        record = StockTransaction(
            product_id=change.product_id,
            quantity=change.quantity,
            action=change.action,
            previous_stock=change.previous_stock,
            new_stock=change.new_stock,
            request_id=request_id,
            from_queue=from_queue,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def audit_for_product(self, product_id: str) -> List[StockTransaction]:
        return (
            self.db.query(StockTransaction)
            .filter(StockTransaction.product_id == product_id)
            .order_by(StockTransaction.timestamp.asc())
            .all()
        )

    # ------------------------------------------------------------------

    def _iter_pages(self, model, page_size: int):
        last_id = None
        while True:
            query = self.db.query(model).populate_existing().order_by(model.id.asc())
            if last_id is not None:
                query = query.filter(model.id > last_id)
            page = query.limit(page_size).all()
            if not page:
                return
            yield page
            if len(page) < page_size:
                return
            last_id = page[-1].id
