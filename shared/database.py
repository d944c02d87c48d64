import logging
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Timezone-aware current time used for every persisted timestamp."""
    return datetime.now(timezone.utc)


def build_database_url(user: str, password: str, host: str, port: str, db: str) -> str:
    """Build a PostgreSQL URL from its parts."""
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


def make_engine(database_url: str, **kwargs) -> Engine:
    """Create an engine for the given URL.

    SQLite URLs (tests, local tooling) get a connection usable from FastAPI's
    worker threads; an in-memory SQLite database is pinned to a single
    connection so every session sees the same data.
    """
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(database_url, echo=False, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables registered on Base."""
    logger.info("Initializing database...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized")
