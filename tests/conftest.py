import os

# Must be set before the service modules read their settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["QUEUE_WORKER_ENABLED"] = "false"
os.environ["KAFKA_ENABLED"] = "false"

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from services.stock_service import models  # noqa: F401  (registers tables on Base)
from services.stock_service.notifications import StockChangeNotifier
from services.stock_service.repository import InventoryRepository
from services.stock_service.stock_query import InMemoryStockCache, StockQueryService
from shared.database import init_db, make_engine, make_session_factory


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def repo(db):
    return InventoryRepository(db)


@pytest.fixture
def make_product(db):
    """Create and commit a product."""

    def _make(product_id="p1", stock=10, name=None, **kwargs):
        product = InventoryRepository(db).create_product(
            name or f"Product {product_id}", stock, product_id=product_id, **kwargs
        )
        db.commit()
        return product

    return _make


@pytest.fixture
def make_transaction(db):
    """Create and commit a transaction with the given items."""

    def _make(items, transaction_id=None, **fields):
        if transaction_id:
            fields["id"] = transaction_id
        transaction = InventoryRepository(db).create_transaction(items, **fields)
        db.commit()
        return transaction

    return _make


@pytest.fixture
def producer():
    return MagicMock()


@pytest.fixture
def stock_cache():
    return InMemoryStockCache()


@pytest.fixture
def notifier(producer, stock_cache):
    return StockChangeNotifier(producer=producer, cache=stock_cache, low_stock_threshold=5)


@pytest.fixture
def client(session_factory, notifier, stock_cache):
    """TestClient bound to the per-test database."""
    from services.stock_service import routes
    from services.stock_service.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    query_service = StockQueryService(stock_cache, ttl_seconds=60)
    app.dependency_overrides[routes.get_db] = override_get_db
    app.dependency_overrides[routes.get_stock_query] = lambda: query_service
    app.dependency_overrides[routes.get_notifier] = lambda: notifier

    yield TestClient(app)

    app.dependency_overrides.clear()
