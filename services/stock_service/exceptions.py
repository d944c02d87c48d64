class StockServiceError(Exception):
    """Base exception for stock service errors."""
    pass


class ProductNotFoundError(StockServiceError):
    """Raised when a product id does not match any product. Permanent, never retried."""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class TransactionNotFoundError(StockServiceError):
    """Raised when a transaction is not found."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class QueueEntryNotFoundError(StockServiceError):
    """Raised when a stock sync queue entry is not found."""

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Stock sync queue entry {entry_id} not found")


class StoreUnavailableError(StockServiceError):
    """Raised when the store could not complete a read or write. Transient."""
    pass


class ConcurrentUpdateError(StoreUnavailableError):
    """Raised when optimistic stock updates kept losing to concurrent writers."""
    pass


class InvalidStockRequestError(StockServiceError, ValueError):
    """Raised when a stock request or admin repair request is malformed."""
    pass


class InvalidQueueTransitionError(StockServiceError):
    """Raised when a queue entry cannot move to the requested state."""
    pass
