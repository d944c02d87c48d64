import enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.ext.hybrid import hybrid_property

from shared.database import Base, utcnow


class StockAction(str, enum.Enum):
    """Direction of a stock mutation."""

    REDUCE = "reduce"
    ADD = "add"


class QueueEntryState(str, enum.Enum):
    """Lifecycle of a stock sync queue entry.

    pending -> processed        stock was applied by the direct path or the processor
    pending -> dead_lettered    retries exhausted, or the product does not exist
    dead_lettered -> pending    manual requeue by an admin
    """

    PENDING = "pending"
    PROCESSED = "processed"
    DEAD_LETTERED = "dead_lettered"


def _prefixed_id(prefix: str):
    return lambda: f"{prefix}-{uuid4().hex[:12].upper()}"


class Product(Base):
    """Product with stock counter and optimistic lock version."""

    __tablename__ = "products"

    id = Column(String(255), primary_key=True, default=_prefixed_id("PROD"))
    name = Column(String(255), nullable=False, default="")
    description = Column(String(1000), nullable=True)
    category = Column(String(100), nullable=True)
    price = Column(Float, nullable=False, default=0.0)
    stock = Column(Integer, nullable=False, default=0)
    # Reference levels for recalculation; original_stock is filled lazily by the first recovery run
    original_stock = Column(Integer, nullable=True)
    base_stock = Column(Integer, nullable=True)
    version = Column(Integer, default=0, nullable=False)  # Optimistic lock
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_updated = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

    @property
    def reference_stock(self) -> int:
        """First defined of original_stock, base_stock, stock."""
        for value in (self.original_stock, self.base_stock, self.stock):
            if value is not None:
                return value
        return 0


class Transaction(Base):
    """Checkout record; items is the ground truth of what was sold."""

    __tablename__ = "transactions"

    id = Column(String(255), primary_key=True, default=_prefixed_id("TXN"))
    customer_name = Column(String(255), nullable=False, default="")
    customer_email = Column(String(255), nullable=False, default="", index=True)
    amount = Column(Float, nullable=False, default=0.0)
    delivery_method = Column(String(50), nullable=False, default="")
    delivery_address = Column(String(1000), nullable=False, default="")
    delivery_fee = Column(String(50), nullable=False, default="0")
    status = Column(String(50), nullable=False, default="initiated")  # initiated, out for delivery, delivered, picked up, ...
    tracking_note = Column(Text, nullable=True)
    items = Column(JSON, nullable=True)  # [{"id": product_id, "quantity": n}, ...]
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class StockSyncQueueEntry(Base):
    """Durable stock mutation intent, retried by the sync queue processor."""

    __tablename__ = "stock_sync_queue"

    id = Column(String(64), primary_key=True, default=lambda: uuid4().hex)
    product_id = Column(String(255), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    action = Column(String(10), nullable=False, default=StockAction.REDUCE.value)
    state = Column(String(20), nullable=False, default=QueueEntryState.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_attempt = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_sync_queue_quantity_positive"),
        Index("ix_stock_sync_queue_pending", "state", "attempts", "timestamp"),
    )

    @hybrid_property
    def processed(self):
        return self.state == QueueEntryState.PROCESSED.value


class StockTransaction(Base):
    """Append-only audit row for every applied stock mutation."""

    __tablename__ = "stock_transactions"

    id = Column(String(64), primary_key=True, default=lambda: uuid4().hex)
    product_id = Column(String(255), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    action = Column(String(10), nullable=False)
    previous_stock = Column(Integer, nullable=False)
    new_stock = Column(Integer, nullable=False)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    # Queue entry id; unique so one intent is applied at most once
    request_id = Column(String(64), nullable=False, unique=True)
    from_queue = Column(Boolean, nullable=False, default=False)
