import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .admin import StockAdmin
from .checkout import CheckoutRecorder
from .config import get_settings
from .exceptions import (
    ConcurrentUpdateError,
    InvalidQueueTransitionError,
    InvalidStockRequestError,
    ProductNotFoundError,
    QueueEntryNotFoundError,
    StoreUnavailableError,
    TransactionNotFoundError,
)
from .notifications import StockChangeNotifier
from .queue_processor import SyncQueueProcessor
from .recalculator import RecoveryRecalculator
from .repository import InventoryRepository
from .schemas import (
    CreateProductRequest,
    CreateTransactionRequest,
    RemapItemRequest,
    SyncStockRequest,
)
from .stock_engine import DecrementEngine
from .stock_query import StockQueryService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stock"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])

# Will be injected by main.py
session_factory: sessionmaker = None
stock_query: StockQueryService = None
notifier: StockChangeNotifier = None


def get_db():
    """Yield a session per request."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def get_stock_query() -> StockQueryService:
    return stock_query


def get_notifier() -> StockChangeNotifier:
    return notifier


def product_to_dict(product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "category": product.category,
        "price": product.price,
        "stock": product.stock,
        "originalStock": product.original_stock,
        "baseStock": product.base_stock,
        "lastUpdated": product.last_updated.isoformat() if product.last_updated else None,
    }


def queue_entry_to_dict(entry) -> dict:
    return {
        "id": entry.id,
        "productId": entry.product_id,
        "quantity": entry.quantity,
        "action": entry.action,
        "state": entry.state,
        "processed": entry.processed,
        "attempts": entry.attempts,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        "lastAttempt": entry.last_attempt.isoformat() if entry.last_attempt else None,
        "processedAt": entry.processed_at.isoformat() if entry.processed_at else None,
        "lastError": entry.last_error,
    }


# ----------------------------------------------------------------------
# Storefront
# ----------------------------------------------------------------------


@router.get("/check-stock")
def check_stock(
    product_id: Optional[str] = Query(None, alias="productId"),
    bypass_cache: bool = Query(False, alias="bypassCache"),
    db: Session = Depends(get_db),
    query_service: StockQueryService = Depends(get_stock_query),
) -> dict:
    """Current availability of one product; degrades instead of failing."""
    if not product_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="productId is required")

    try:
        return query_service.check_stock(db, product_id, bypass_cache=bypass_cache)
    except ProductNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/sync-stock")
def sync_stock(
    request: SyncStockRequest,
    db: Session = Depends(get_db),
    stock_notifier: StockChangeNotifier = Depends(get_notifier),
):
    """Apply a stock mutation now, or leave it queued for the processor."""
    try:
        outcome = DecrementEngine(db, notifier=stock_notifier).sync_stock(
            request.product_id, request.quantity, request.action
        )
    except InvalidStockRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ProductNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    timestamp = outcome.timestamp.isoformat()
    body = {
        "success": outcome.success,
        "message": outcome.message,
        "processedItem": {
            "productId": outcome.product_id,
            "quantity": outcome.quantity,
            "action": outcome.action,
            "processed": outcome.success,
            "timestamp": timestamp,
        },
        "requestId": outcome.request_id,
        "productId": outcome.product_id,
        "quantity": outcome.quantity,
        "action": outcome.action,
        "previousStock": outcome.previous_stock,
        "newStock": outcome.new_stock,
        "alreadyApplied": outcome.already_applied,
        "queuedForRetry": outcome.queued_for_retry,
        "timestamp": timestamp,
    }
    if outcome.queued_for_retry:
        body["error"] = outcome.error
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body)
    return body


@router.api_route("/process-stock-queue", methods=["GET", "POST"])
def process_stock_queue(
    db: Session = Depends(get_db),
    stock_notifier: StockChangeNotifier = Depends(get_notifier),
) -> dict:
    """Run one batch of the stock sync queue."""
    settings = get_settings()
    processor = SyncQueueProcessor(
        db,
        notifier=stock_notifier,
        batch_size=settings.queue_batch_size,
        max_attempts=settings.queue_max_attempts,
    )
    try:
        return processor.process_queue().to_dict()
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.post("/transactions", status_code=status.HTTP_201_CREATED)
def create_transaction(
    request: CreateTransactionRequest,
    db: Session = Depends(get_db),
    stock_notifier: StockChangeNotifier = Depends(get_notifier),
) -> dict:
    """Log a checkout and decrement stock for its items."""
    items = [item.model_dump(exclude_none=True) for item in request.items]
    fields = request.model_dump(exclude={"items"})
    try:
        return CheckoutRecorder(db, notifier=stock_notifier).record_checkout(items, **fields)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/products")
def list_products(db: Session = Depends(get_db)) -> list:
    """List all products."""
    return [product_to_dict(p) for p in InventoryRepository(db).list_products()]


@router.get("/products/{product_id}")
def get_product(product_id: str, db: Session = Depends(get_db)) -> dict:
    """Get product details."""
    product = InventoryRepository(db).get_product(product_id)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Product {product_id} not found")
    return product_to_dict(product)


@router.post("/products", status_code=status.HTTP_201_CREATED)
def create_product(request: CreateProductRequest, db: Session = Depends(get_db)) -> dict:
    """Create new product (admin upload)."""
    repo = InventoryRepository(db)
    try:
        product = repo.create_product(
            request.name,
            request.stock,
            price=request.price,
            description=request.description,
            category=request.category,
            product_id=request.id,
            base_stock=request.base_stock,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Product {request.id} already exists")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating product: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Could not create product")
    return product_to_dict(product)


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------


def _stock_admin(db: Session, stock_notifier: StockChangeNotifier) -> StockAdmin:
    return StockAdmin(db, notifier=stock_notifier, page_size=get_settings().recalculation_page_size)


def _admin_error(e: Exception) -> HTTPException:
    if isinstance(e, (ProductNotFoundError, TransactionNotFoundError, QueueEntryNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (ConcurrentUpdateError, InvalidQueueTransitionError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, InvalidStockRequestError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@admin_router.post("/recalculate-stock")
def recalculate_stock(
    apply: bool = Query(True),
    db: Session = Depends(get_db),
    stock_notifier: StockChangeNotifier = Depends(get_notifier),
) -> dict:
    """Rebuild stock from the transaction log; apply=false only reports."""
    recalculator = RecoveryRecalculator(
        db, notifier=stock_notifier, page_size=get_settings().recalculation_page_size
    )
    try:
        return recalculator.recalculate(apply=apply).to_dict()
    except StoreUnavailableError as e:
        raise _admin_error(e)


@admin_router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    stock_notifier: StockChangeNotifier = Depends(get_notifier),
) -> dict:
    """Delete a transaction and recalculate stock."""
    try:
        return _stock_admin(db, stock_notifier).delete_transaction(transaction_id)
    except (TransactionNotFoundError, StoreUnavailableError) as e:
        raise _admin_error(e)


@admin_router.post("/transactions/cleanup")
def cleanup_transactions(
    db: Session = Depends(get_db),
    stock_notifier: StockChangeNotifier = Depends(get_notifier),
) -> dict:
    """Delete transactions with no items or unknown product ids, then recalculate."""
    try:
        return _stock_admin(db, stock_notifier).delete_invalid_transactions()
    except StoreUnavailableError as e:
        raise _admin_error(e)


@admin_router.post("/transactions/{transaction_id}/remap")
def remap_transaction_item(
    transaction_id: str,
    request: RemapItemRequest,
    db: Session = Depends(get_db),
    stock_notifier: StockChangeNotifier = Depends(get_notifier),
) -> dict:
    """Point a dangling item at an existing product, then recalculate."""
    try:
        return _stock_admin(db, stock_notifier).remap_item(
            transaction_id, request.from_product_id, request.to_product_id
        )
    except (
        TransactionNotFoundError,
        ProductNotFoundError,
        InvalidStockRequestError,
        StoreUnavailableError,
    ) as e:
        raise _admin_error(e)


@admin_router.get("/stock-queue")
def list_stock_queue(
    state: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list:
    """List stock sync queue entries, newest first."""
    try:
        entries = _stock_admin(db, None).list_queue(state=state, limit=limit)
    except InvalidStockRequestError as e:
        raise _admin_error(e)
    return [queue_entry_to_dict(entry) for entry in entries]


@admin_router.post("/stock-queue/{entry_id}/requeue")
def requeue_stock_entry(entry_id: str, db: Session = Depends(get_db)) -> dict:
    """Move a dead-lettered entry back to pending."""
    try:
        entry = _stock_admin(db, None).requeue(entry_id)
    except (QueueEntryNotFoundError, InvalidQueueTransitionError, StoreUnavailableError) as e:
        raise _admin_error(e)
    return queue_entry_to_dict(entry)
