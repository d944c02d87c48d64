"""
events.py - Kafka Event Schema Definitions

PURPOSE:
    Defines the stock events the service publishes so real-time storefront
    views, admin dashboards and alerting consumers can follow stock changes
    without polling the database. Uses Pydantic for validation and serialization.

EVENT CATEGORIES:
    1. Inventory Events: stock changes
       - inventory.stock_updated  (every committed decrement/increment)
       - inventory.low            (stock fell below the low-stock threshold)
       - inventory.depleted       (stock reached zero)
       - inventory.recalculated   (a recovery run rewrote stock from history)

    2. System Events: Dead Letter Queue
       - dlq.events (a stock sync queue entry exhausted its retries or failed permanently)

COMMON FIELDS (BaseEvent):
    - event_id: Unique identifier (UUID)
    - event_type: Event category and action
    - timestamp: UTC timestamp of event creation
    - correlation_id: the stock request id (queue entry id) the event belongs to

SERIALIZATION:
    json_data = event.model_dump_json()
    event = StockUpdatedEvent.model_validate_json(json_data)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class BaseEvent(BaseModel):
    """
    Base event model for all Kafka events.

    All events carry a unique event ID, an event type, a UTC timestamp and a
    correlation ID linking them to the stock request that caused them.
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str


# ============================================================================
# INVENTORY EVENTS - Stock changes
# ============================================================================

class StockUpdatedEvent(BaseEvent):
    """
    Event published after a stock change is committed.
    Triggers: direct checkout decrement, sync queue processor
    Consumers: storefront live stock badges, admin dashboard
    """

    event_type: str = "inventory.stock_updated"
    product_id: str
    quantity: int
    action: str  # "reduce" or "add"
    previous_stock: int
    new_stock: int
    from_queue: bool = False


class InventoryLowEvent(BaseEvent):
    """
    Event published when stock falls below the low-stock threshold.
    Consumers: restock alerts
    """

    event_type: str = "inventory.low"
    product_id: str
    current_stock: int
    threshold: int = 5


class InventoryDepletedEvent(BaseEvent):
    """
    Event published when stock reaches zero.
    Consumers: storefront (mark sold out), restock alerts
    """

    event_type: str = "inventory.depleted"
    product_id: str


class StockRecalculatedEvent(BaseEvent):
    """
    Event published after a recovery run wrote recalculated stock.
    Consumers: admin dashboard
    """

    event_type: str = "inventory.recalculated"
    updated_products: List[str]
    discrepancy_count: int
    invalid_product_ids: List[str] = Field(default_factory=list)
    transactions_without_items: int = 0


# ============================================================================
# DLQ EVENTS - Dead Letter Queue (stock intents that need manual handling)
# ============================================================================

class DLQEvent(BaseEvent):
    """
    Event published when a stock sync queue entry is dead-lettered.
    Consumers: operator alerting; the entry can be requeued from the admin API

    Purpose: surfaces stuck stock intents instead of letting them sit silently
    """

    event_type: str = "dlq.events"
    original_topic: str = "stock.sync_queue"
    original_event_type: str = "stock.sync_requested"
    error_reason: str
    retry_count: int
    payload: Dict[str, Any]
    product_id: Optional[str] = None


# Event mapping for deserialization
EVENT_TYPE_MAP = {
    "inventory.stock_updated": StockUpdatedEvent,
    "inventory.low": InventoryLowEvent,
    "inventory.depleted": InventoryDepletedEvent,
    "inventory.recalculated": StockRecalculatedEvent,
    "dlq.events": DLQEvent,
}

ALL_TOPICS = list(EVENT_TYPE_MAP)
