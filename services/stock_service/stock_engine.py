"""
Decrement Engine

Applies a checkout-time stock mutation (reduce or add) to one product.

Every call first commits a stock sync queue entry (the intent), then tries
the direct update. The direct update, the claim of the queue entry and the
stock_transactions audit row commit together, so either all three happen or
none do and the entry is left pending for the sync queue processor.

Outcomes:
    applied           stock updated, entry processed
    already applied   the processor claimed the entry first; nothing to do
    queued for retry  store unavailable or optimistic conflicts exhausted
    not found         ProductNotFoundError; the entry is dead-lettered
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.database import utcnow

from .exceptions import InvalidStockRequestError, ProductNotFoundError, StoreUnavailableError
from .models import QueueEntryState, StockAction
from .repository import InventoryRepository, StockChange

logger = logging.getLogger(__name__)

PAST_TENSE = {StockAction.REDUCE.value: "reduced", StockAction.ADD.value: "added"}


@dataclass
class SyncOutcome:
    """Result of one sync_stock call."""

    request_id: str
    product_id: str
    quantity: int
    action: str
    applied: bool = False
    already_applied: bool = False
    queued_for_retry: bool = False
    previous_stock: Optional[int] = None
    new_stock: Optional[int] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return self.applied or self.already_applied

    @property
    def message(self) -> str:
        if self.applied:
            return f"Stock {PAST_TENSE[self.action]} successfully for product {self.product_id}"
        if self.already_applied:
            return f"Stock request {self.request_id} was already applied"
        return f"Stock update for product {self.product_id} queued for retry"


def validate_stock_request(product_id, quantity, action) -> str:
    """Validate inputs; returns the normalized action value."""
    if not product_id or not isinstance(product_id, str):
        raise InvalidStockRequestError("productId is required")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidStockRequestError(f"quantity must be a positive integer, got {quantity!r}")
    try:
        return StockAction(action).value
    except ValueError:
        raise InvalidStockRequestError(f"action must be 'reduce' or 'add', got {action!r}")


class DecrementEngine:
    """Checkout-time stock mutations backed by the durable sync queue."""

    def __init__(self, db: Session, notifier=None):
        self.db = db
        self.repo = InventoryRepository(db)
        self.notifier = notifier

    def sync_stock(self, product_id: str, quantity: int, action: str = "reduce") -> SyncOutcome:
        """
        Record the intent, then attempt the direct update.
        Raises InvalidStockRequestError, ProductNotFoundError, or StoreUnavailableError
        when the intent itself could not be recorded.
        """
        action = validate_stock_request(product_id, quantity, action)
        request_id = self._record_intent(product_id, quantity, action)
        return self._apply_direct(request_id, product_id, quantity, action)

    def _record_intent(self, product_id: str, quantity: int, action: str) -> str:
        try:
            entry = self.repo.enqueue_intent(product_id, quantity, action)
            request_id = entry.id
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not record stock intent for {product_id}: {e}", extra={"product_id": product_id})
            raise StoreUnavailableError(f"Could not record stock intent for {product_id}") from e

        logger.info(
            f"Queued {action} of {quantity} for {product_id}",
            extra={"request_id": request_id, "product_id": product_id},
        )
        return request_id

    def _apply_direct(self, request_id: str, product_id: str, quantity: int, action: str) -> SyncOutcome:
        outcome = SyncOutcome(request_id=request_id, product_id=product_id, quantity=quantity, action=action)
        log_extra = {"request_id": request_id, "product_id": product_id}

        try:
            # Claim first: if the processor already took this entry, apply nothing
            if not self.repo.claim_entry(request_id):
                self.db.rollback()
                outcome.already_applied = self._entry_state(request_id) == QueueEntryState.PROCESSED.value
                outcome.queued_for_retry = not outcome.already_applied
                logger.info(f"Stock request {request_id} was handled by another path", extra=log_extra)
                return outcome

            change = self.repo.apply_stock_delta(product_id, quantity, action)
            self.repo.add_audit(change, request_id, from_queue=False)
            self.db.commit()

        except ProductNotFoundError:
            self.db.rollback()
            self._dead_letter(outcome, "Product not found")
            raise

        except (StoreUnavailableError, SQLAlchemyError) as e:
            self.db.rollback()
            logger.warning(f"Direct stock update failed, left queued for retry: {e}", extra=log_extra)
            outcome.queued_for_retry = True
            outcome.error = str(e)
            return outcome

        self._on_applied(outcome, change)
        return outcome

    def _on_applied(self, outcome: SyncOutcome, change: StockChange) -> None:
        outcome.applied = True
        outcome.previous_stock = change.previous_stock
        outcome.new_stock = change.new_stock
        logger.info(
            f"Applied {change.action} of {change.quantity} to {change.product_id}: "
            f"{change.previous_stock} -> {change.new_stock}",
            extra={"request_id": outcome.request_id, "product_id": change.product_id},
        )
        if self.notifier is not None:
            self.notifier.stock_changed(change, outcome.request_id, from_queue=False)

    def _entry_state(self, request_id: str) -> Optional[str]:
        try:
            entry = self.repo.get_queue_entry(request_id, refresh=True)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Could not read stock sync entry {request_id}: {e}", extra={"request_id": request_id})
            return None
        return entry.state if entry else None

    def _dead_letter(self, outcome: SyncOutcome, reason: str) -> None:
        request_id = outcome.request_id
        try:
            moved = self.repo.dead_letter(request_id, reason)
            self.db.commit()
        except SQLAlchemyError as e:
            # The entry stays pending; the processor reaches the same verdict on its next run
            self.db.rollback()
            logger.error(f"Could not dead-letter stock sync entry {request_id}: {e}", extra={"request_id": request_id})
            return

        if moved and self.notifier is not None:
            self.notifier.entry_dead_lettered(
                request_id, outcome.product_id, outcome.quantity, outcome.action, attempts=0, reason=reason
            )
