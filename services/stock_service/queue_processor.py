"""
queue_processor.py - Stock Sync Queue Processor

PURPOSE:
    Retries stock mutation intents that the direct checkout path could not
    apply. Runs on demand (GET/POST /process-stock-queue) and from a
    background worker thread that polls the queue.

SELECTION:
    state = pending AND attempts < max_attempts (5)
    ORDER BY attempts ASC, timestamp ASC
    LIMIT batch_size (20)
    Entries that failed fewer times and arrived earlier go first, so a single
    poisoned entry cannot starve the rest of the queue.

PER ENTRY:
    1. attempts += 1, last_attempt = now (committed before anything else, so a
       crash mid-apply still shows the attempt)
    2. if stock_transactions already holds the entry id as request_id, the
       intent was applied elsewhere: mark processed, apply nothing
    3. claim the entry (pending -> processed, conditional), apply the stock
       delta, append the audit row with from_queue=True; one commit
    4. product missing -> dead-letter with "Product not found" (permanent)
    5. transient failure -> roll back, store last_error; dead-letter once
       attempts reaches max_attempts

AT-MOST-ONCE:
    Two processor runs racing on the same entry cannot both apply it: the
    attempt counter and the claim are conditional updates on state = pending,
    and stock_transactions.request_id is unique.

RESULT:
    {successful, failed, skipped, details: {success: [...], failed: [...], skipped: [...]}}
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .exceptions import ProductNotFoundError, StoreUnavailableError
from .models import QueueEntryState, StockSyncQueueEntry
from .repository import InventoryRepository

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20
DEFAULT_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class QueueItem:
    """Snapshot of a queue entry taken when the batch was selected."""

    queue_id: str
    product_id: str
    quantity: int
    action: str
    attempts: int

    @classmethod
    def from_entry(cls, entry: StockSyncQueueEntry) -> "QueueItem":
        return cls(
            queue_id=entry.id,
            product_id=entry.product_id,
            quantity=entry.quantity,
            action=entry.action,
            attempts=entry.attempts or 0,
        )


@dataclass
class QueueRunResult:
    """Per-item outcomes of one processor run."""

    success: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def successful_count(self) -> int:
        return len(self.success)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def total(self) -> int:
        return len(self.success) + len(self.failed) + len(self.skipped)

    def to_dict(self) -> Dict[str, Any]:
        if self.total == 0:
            message = "No pending items in the queue"
        else:
            message = f"Processed {self.successful_count + self.failed_count} queue items"
        return {
            "success": True,
            "message": message,
            "successful": self.successful_count,
            "failed": self.failed_count,
            "skipped": len(self.skipped),
            "details": {
                "success": self.success,
                "failed": self.failed,
                "skipped": self.skipped,
            },
        }


class SyncQueueProcessor:
    """Applies pending stock sync queue entries."""

    def __init__(
        self,
        db: Session,
        notifier=None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.db = db
        self.repo = InventoryRepository(db)
        self.notifier = notifier
        self.batch_size = batch_size
        self.max_attempts = max_attempts

    def process_queue(self) -> QueueRunResult:
        """Select one batch and process it."""
        return self.process_batch(self.fetch_batch())

    def fetch_batch(self) -> List[QueueItem]:
        """Select the next batch of eligible entries."""
        try:
            entries = self.repo.fetch_pending_entries(self.batch_size, self.max_attempts)
            items = [QueueItem.from_entry(entry) for entry in entries]
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreUnavailableError(f"Could not read stock sync queue: {e}") from e
        return items

    def process_batch(self, items: List[QueueItem]) -> QueueRunResult:
        result = QueueRunResult()
        if not items:
            return result

        logger.info(f"Starting stock queue processing ({len(items)} entries)")
        for item in items:
            self._process_item(item, result)

        logger.info(
            f"Stock queue run finished: {result.successful_count} succeeded, "
            f"{result.failed_count} failed, {len(result.skipped)} skipped"
        )
        return result

    def _process_item(self, item: QueueItem, result: QueueRunResult) -> None:
        log_extra = {"request_id": item.queue_id, "product_id": item.product_id}
        logger.info(f"Processing queue item {item.queue_id} for product {item.product_id}", extra=log_extra)

        # Count the attempt before touching stock
        try:
            if not self.repo.record_attempt(item.queue_id, self.max_attempts):
                self.db.rollback()
                result.skipped.append(self._item_detail(item, item.attempts, reason="No longer pending"))
                return
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not record attempt for queue item {item.queue_id}: {e}", extra=log_extra)
            result.failed.append(self._item_detail(item, item.attempts, reason=str(e)))
            return

        attempts = item.attempts + 1

        try:
            if self.repo.has_audit_for(item.queue_id):
                if self.repo.claim_entry(item.queue_id):
                    self.db.commit()
                    result.success.append(self._item_detail(item, attempts, alreadyApplied=True))
                else:
                    self.db.rollback()
                    result.skipped.append(self._item_detail(item, attempts, reason="No longer pending"))
                return

            if not self.repo.claim_entry(item.queue_id):
                self.db.rollback()
                result.skipped.append(self._item_detail(item, attempts, reason="No longer pending"))
                return

            change = self.repo.apply_stock_delta(item.product_id, item.quantity, item.action)
            self.repo.add_audit(change, item.queue_id, from_queue=True)
            self.db.commit()

        except ProductNotFoundError:
            self.db.rollback()
            logger.warning(f"Product {item.product_id} not found in database", extra=log_extra)
            self._dead_letter(item, attempts, "Product not found")
            result.failed.append(self._item_detail(item, attempts, reason="Product not found"))
            return

        except (StoreUnavailableError, SQLAlchemyError) as e:
            self.db.rollback()
            logger.error(f"Error processing queue item {item.queue_id}: {e}", extra=log_extra)
            self._record_failure(item, attempts, str(e))
            result.failed.append(self._item_detail(item, attempts, reason=str(e)))
            return

        result.success.append(
            self._item_detail(
                item,
                attempts,
                previousStock=change.previous_stock,
                newStock=change.new_stock,
            )
        )
        if self.notifier is not None:
            self.notifier.stock_changed(change, item.queue_id, from_queue=True)

    def _dead_letter(self, item: QueueItem, attempts: int, reason: str) -> None:
        try:
            moved = self.repo.dead_letter(item.queue_id, reason)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not dead-letter queue item {item.queue_id}: {e}", extra={"request_id": item.queue_id})
            return
        if moved:
            self._notify_dead_letter(item, attempts, reason)

    def _record_failure(self, item: QueueItem, attempts: int, reason: str) -> None:
        try:
            entry = self.repo.record_failure(item.queue_id, reason, self.max_attempts)
            state = entry.state if entry is not None else None
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not record failure for queue item {item.queue_id}: {e}", extra={"request_id": item.queue_id})
            return
        if state == QueueEntryState.DEAD_LETTERED.value:
            self._notify_dead_letter(item, attempts, reason)

    def _notify_dead_letter(self, item: QueueItem, attempts: int, reason: str) -> None:
        if self.notifier is not None:
            self.notifier.entry_dead_lettered(
                item.queue_id, item.product_id, item.quantity, item.action, attempts=attempts, reason=reason
            )

    @staticmethod
    def _item_detail(item: QueueItem, attempts: int, **extra) -> Dict[str, Any]:
        detail = {
            "queueId": item.queue_id,
            "productId": item.product_id,
            "quantity": item.quantity,
            "action": item.action,
            "attempts": attempts,
        }
        detail.update(extra)
        return detail


class QueueWorker:
    """Background thread that polls the stock sync queue."""

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier=None,
        poll_interval: float = 30,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        """Initialize worker."""
        self.session_factory = session_factory
        self.notifier = notifier
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> threading.Thread:
        """Start worker thread."""
        self._stop.clear()
        self._thread = threading.Thread(target=self._poll_loop, name="stock-queue-worker", daemon=True)
        self._thread.start()
        logger.info(f"Stock queue worker started (every {self.poll_interval}s)")
        return self._thread

    def run_once(self) -> QueueRunResult:
        """Process one batch in a fresh session."""
        db = self.session_factory()
        try:
            processor = SyncQueueProcessor(
                db,
                notifier=self.notifier,
                batch_size=self.batch_size,
                max_attempts=self.max_attempts,
            )
            return processor.process_queue()
        finally:
            db.close()

    def _poll_loop(self) -> None:
        """Poll until stopped."""
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in stock queue worker: {e}", exc_info=True)
            self._stop.wait(self.poll_interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop worker thread."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Stock queue worker stopped")
