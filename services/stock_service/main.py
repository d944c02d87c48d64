"""
stock_service/main.py - Storefront Stock Reconciliation Service

PURPOSE:
    Keeps each product's stock counter consistent with the append-only
    transaction log. Three write paths touch stock and this service owns all
    of them:
      - the Decrement Engine (checkout-time, direct)
      - the Sync Queue Processor (retries of failed direct attempts)
      - the Recovery Recalculator (rebuild from transaction history)
    plus the cached, read-only Stock Query Service used by the storefront.

CHECKOUT WORKFLOW:
    1. POST /transactions records the transaction (status "initiated")
    2. For every item, the Decrement Engine:
       - commits a stock_sync_queue entry first (the intent)
       - claims it, applies the delta with optimistic locking and writes the
         stock_transactions audit row, all in one commit
       - on a transient failure leaves the entry pending
    3. The queue worker (and GET/POST /process-stock-queue) retries pending
       entries, fewest attempts and oldest first, up to 5 attempts
    4. Entries that keep failing, or whose product does not exist, are
       dead-lettered and wait for an admin requeue

KEY FEATURES:
    - Intent First: no stock mutation is attempted before its queue entry is durable
    - At-Most-Once: the queue entry id doubles as the audit row's unique request_id
    - Optimistic Locking: version column, 3 retries on concurrent conflicts
    - Degraded Reads: stale cache, then an optimistic fallback, never a hard error
    - Recalculation: batch write rolled back entirely on any conflict

API ENDPOINTS:
    GET      /check-stock?productId=&bypassCache=   - Cached availability
    POST     /sync-stock                            - Direct stock mutation
    GET|POST /process-stock-queue                   - Run one queue batch
    POST     /transactions                          - Log a checkout
    GET      /products, /products/{product_id}      - Catalogue
    POST     /products                              - Admin upload
    POST     /admin/recalculate-stock?apply=        - Rebuild stock from history
    DELETE   /admin/transactions/{id}               - Delete + recalculate
    POST     /admin/transactions/cleanup            - Drop invalid transactions + recalculate
    POST     /admin/transactions/{id}/remap         - Fix a dangling item + recalculate
    GET      /admin/stock-queue?state=              - Inspect the queue
    POST     /admin/stock-queue/{id}/requeue        - Retry a dead-lettered entry
    GET      /health                                - Health check

KAFKA EVENTS (only when KAFKA_ENABLED=true):
    PUBLISHED:
        - inventory.stock_updated: every committed stock change
        - inventory.low: stock dropped below LOW_STOCK_THRESHOLD
        - inventory.depleted: stock reached 0
        - inventory.recalculated: a recalculation wrote new stock
        - dlq.events: a queue entry was dead-lettered

DATABASE:
    - products, transactions, stock_sync_queue, stock_transactions
      (PostgreSQL in deployment, SQLite for tests and local tooling)

USAGE:
    python -m services.stock_service.main
    Runs on port 8005 (STOCK_SERVICE_PORT)
    Access: http://localhost:8005/check-stock?productId=PROD-0001
"""

import logging
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI

from shared.database import init_db, make_engine, make_session_factory
from shared.kafka_client import BaseKafkaProducer
from shared.logging_config import setup_logging
from shared.topic_initializer import create_topics

from . import routes
from .config import get_settings
from .notifications import StockChangeNotifier
from .queue_processor import QueueWorker
from .schemas import HealthResponse
from .stock_query import InMemoryStockCache, RedisStockCache, StockQueryService

settings = get_settings()

# Setup logging
setup_logging("stock-service", level=settings.log_level)
logger = logging.getLogger(__name__)

# Database setup
engine = make_engine(settings.sqlalchemy_url)
SessionLocal = make_session_factory(engine)

# Global instances
producer: BaseKafkaProducer = None
queue_worker: QueueWorker = None

routes.session_factory = SessionLocal
routes.stock_query = StockQueryService(InMemoryStockCache(), ttl_seconds=settings.stock_cache_ttl_seconds)
routes.notifier = StockChangeNotifier(
    cache=routes.stock_query.cache, low_stock_threshold=settings.low_stock_threshold
)


def build_stock_cache():
    """Stock cache for the configured backend."""
    if settings.stock_cache_backend == "redis":
        client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            db=0,
            decode_responses=True,
        )
        client.ping()
        logger.info(f"Using Redis stock cache at {settings.redis_host}:{settings.redis_port}")
        return RedisStockCache(client)
    return InMemoryStockCache()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage app lifecycle."""
    global producer, queue_worker

    logger.info("Starting Stock Service...")

    # Initialize database
    try:
        init_db(engine)
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    # Seed products
    if settings.seed_products:
        from .seed_data import seed_products

        db = SessionLocal()
        try:
            seed_products(db)
            logger.info("Products seeded")
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to seed products: {e}")
        finally:
            db.close()

    # Stock cache
    try:
        cache = build_stock_cache()
    except redis.RedisError as e:
        logger.error(f"Failed to connect to Redis, using in-memory stock cache: {e}")
        cache = InMemoryStockCache()
    routes.stock_query = StockQueryService(cache, ttl_seconds=settings.stock_cache_ttl_seconds)

    # Kafka topics and producer
    if settings.kafka_enabled:
        try:
            create_topics(
                settings.kafka_bootstrap_servers,
                replication_factor=settings.kafka_replication_factor,
            )
            producer = BaseKafkaProducer(settings.kafka_bootstrap_servers, client_id="stock-producer")
            logger.info("Kafka producer initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Kafka producer: {e}")
            raise

    routes.notifier = StockChangeNotifier(
        producer=producer, cache=cache, low_stock_threshold=settings.low_stock_threshold
    )

    # Start queue worker thread
    if settings.queue_worker_enabled:
        queue_worker = QueueWorker(
            SessionLocal,
            notifier=routes.notifier,
            poll_interval=settings.queue_poll_interval,
            batch_size=settings.queue_batch_size,
            max_attempts=settings.queue_max_attempts,
        )
        queue_worker.start()

    yield

    logger.info("Shutting down Stock Service...")
    if queue_worker:
        queue_worker.stop()
    if producer:
        producer.close()


app = FastAPI(title="Stock Service", version="1.0.0", lifespan=lifespan)
app.include_router(routes.router)
app.include_router(routes.admin_router)


@app.get("/health", response_model=HealthResponse)
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "stock-service",
        "version": "1.0.0",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.stock_service_port)
