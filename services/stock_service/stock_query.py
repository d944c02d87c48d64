"""
Stock Query Service

Read path behind GET /check-stock. Serves availability checks to the
storefront from a short-TTL cache and never mutates stock.

Degradation ladder when the store cannot be read:
    1. stale cache entry, annotated fromStaleCache/cacheAge
    2. fallback payload that assumes the item is purchasable

A shopper never sees a hard error from this path; only a product that is
genuinely absent on a live lookup is reported as not found.

Cache backends:
    - InMemoryStockCache: per-process dict (default)
    - RedisStockCache: shared across workers, key "stock:{product_id}"
Entries are kept past their TTL so they can still be served stale.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import ProductNotFoundError
from .repository import InventoryRepository

logger = logging.getLogger(__name__)

# Stock reported when nothing is known about a product; enough to keep it purchasable
FALLBACK_STOCK = 1


@dataclass
class CachedStock:
    """Cached check-stock payload and when it was stored."""

    payload: Dict[str, Any]
    cached_at: float


class InMemoryStockCache:
    """Process-local stock cache."""

    def __init__(self):
        self._entries: Dict[str, CachedStock] = {}
        self._lock = threading.Lock()

    def get(self, product_id: str) -> Optional[CachedStock]:
        with self._lock:
            return self._entries.get(product_id)

    def set(self, product_id: str, payload: Dict[str, Any], cached_at: float) -> None:
        with self._lock:
            self._entries[product_id] = CachedStock(payload=dict(payload), cached_at=cached_at)

    def invalidate(self, product_id: str) -> None:
        with self._lock:
            self._entries.pop(product_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisStockCache:
    """Stock cache stored in Redis so every API worker shares it."""

    KEY_PREFIX = "stock:"
    # Stale entries stay available for the degradation ladder for a day
    RETENTION = 86400

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def get(self, product_id: str) -> Optional[CachedStock]:
        try:
            raw = self.redis.get(f"{self.KEY_PREFIX}{product_id}")
        except redis.RedisError as e:
            logger.warning(f"Stock cache read failed for {product_id}: {e}", extra={"product_id": product_id})
            return None

        if raw is None:
            return None

        try:
            data = json.loads(raw)
            return CachedStock(payload=dict(data["payload"]), cached_at=float(data["cached_at"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable stock cache entry for {product_id}: {e}", extra={"product_id": product_id})
            return None

    def set(self, product_id: str, payload: Dict[str, Any], cached_at: float) -> None:
        value = json.dumps({"payload": payload, "cached_at": cached_at})
        try:
            self.redis.set(f"{self.KEY_PREFIX}{product_id}", value, ex=self.RETENTION)
        except redis.RedisError as e:
            logger.warning(f"Stock cache write failed for {product_id}: {e}", extra={"product_id": product_id})

    def invalidate(self, product_id: str) -> None:
        try:
            self.redis.delete(f"{self.KEY_PREFIX}{product_id}")
        except redis.RedisError as e:
            logger.warning(f"Stock cache invalidation failed for {product_id}: {e}", extra={"product_id": product_id})

    def clear(self) -> None:
        try:
            keys = list(self.redis.scan_iter(match=f"{self.KEY_PREFIX}*"))
            if keys:
                self.redis.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"Stock cache clear failed: {e}")


class StockQueryService:
    """Cached, read-only availability lookups."""

    def __init__(self, cache, ttl_seconds: float = 60, clock: Callable[[], float] = time.time):
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def check_stock(self, db: Session, product_id: str, bypass_cache: bool = False) -> Dict[str, Any]:
        """
        Return {productId, stock, inStock, name, lastUpdated, source}.
        Raises ProductNotFoundError only when a live lookup finds no product.
        """
        now = self.clock()
        cached = self.cache.get(product_id)

        if cached is not None and not bypass_cache:
            age = now - cached.cached_at
            if age < self.ttl_seconds:
                return {**cached.payload, "source": "cache", "cacheAge": round(age, 3)}

        try:
            product = InventoryRepository(db).get_product(product_id, refresh=True)
        except SQLAlchemyError as e:
            self._rollback_quietly(db)
            logger.warning(f"Stock lookup failed for {product_id}, degrading: {e}", extra={"product_id": product_id})
            return self._degraded(product_id, cached, now)

        if product is None:
            self.cache.invalidate(product_id)
            raise ProductNotFoundError(product_id)

        stock = product.stock or 0
        last_updated = product.last_updated or datetime.now(timezone.utc)
        payload = {
            "productId": product.id,
            "stock": stock,
            "name": product.name or "",
            "lastUpdated": last_updated.isoformat(),
            "inStock": stock > 0,
        }
        self.cache.set(product_id, payload, cached_at=now)
        return {**payload, "source": "live"}

    def invalidate(self, product_id: str) -> None:
        self.cache.invalidate(product_id)

    def _degraded(self, product_id: str, cached: Optional[CachedStock], now: float) -> Dict[str, Any]:
        if cached is not None:
            return {
                **cached.payload,
                "source": "stale-cache",
                "fromStaleCache": True,
                "cacheAge": round(now - cached.cached_at, 3),
            }

        # Nothing known: let the shopper continue, checkout reconciles later
        return {
            "productId": product_id,
            "stock": FALLBACK_STOCK,
            "name": "",
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
            "inStock": True,
            "isEstimated": True,
            "source": "fallback",
        }

    @staticmethod
    def _rollback_quietly(db: Session) -> None:
        try:
            db.rollback()
        except SQLAlchemyError as e:
            logger.debug(f"Rollback after failed stock lookup also failed: {e}")
