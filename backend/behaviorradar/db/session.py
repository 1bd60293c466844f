"""
Database session management with SQLAlchemy 2.0.

Provides engine configuration, the session factory and context managers for
safe database access with automatic commit and rollback. Components receive
a session factory so the serving threads, the training pool and tests each
open short-lived sessions of their own.
"""

import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from loguru import logger

from behaviorradar.config import settings
from behaviorradar.utils.errors import BehaviorRadarError, DatabaseError


SessionFactory = Callable[[], Session]


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with pool settings suited to the backend.
    
    SQLite connections are shared across threads; an in-memory database uses a
    single static connection so every session sees the same tables.
    """
    if database_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    
    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
        echo=echo,
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    """Session factory used by every repository and service."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=bind,
        expire_on_commit=False,  # Prevent lazy load issues after commit
    )


engine = build_engine(settings.database_url, echo=settings.debug)
SessionLocal = build_session_factory(engine)


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables that don't exist yet. Safe to call repeatedly."""
    from behaviorradar.db.models import Base
    
    Base.metadata.create_all(bind=bind or engine, checkfirst=True)
    logger.info("Database schema initialized")


@contextmanager
def get_db_context(session_factory: Optional[SessionFactory] = None) -> Generator[Session, None, None]:
    """
    Get a database session as a context manager.
    
    Usage:
        with get_db_context() as db:
            rows = db.execute(select(TradingEventRecord)).scalars().all()
    
    The session is committed on success and rolled back on error; the original
    exception propagates unchanged.
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Database session failed: {e}")
        raise
    finally:
        db.close()


@contextmanager
def get_db_transaction(session_factory: Optional[SessionFactory] = None) -> Generator[Session, None, None]:
    """
    Get a database session with explicit transaction control.
    
    Usage:
        with get_db_transaction() as db:
            db.add(record)
            # Transaction committed on success
    
    The transaction is rolled back on any error. Domain errors raised inside
    the block propagate as-is; everything else is wrapped in DatabaseError.
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
        logger.debug("Database transaction committed")
    except BehaviorRadarError:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Database transaction rolled back: {e}")
        raise DatabaseError(f"Transaction failed: {e}") from e
    finally:
        db.close()


def check_db_health(session_factory: Optional[SessionFactory] = None) -> Dict[str, Any]:
    """Run a trivial query and report latency."""
    result: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "latency_ms": None,
        "errors": [],
    }
    start_time = time.time()
    try:
        with get_db_context(session_factory) as db:
            db.execute(text("SELECT 1"))
        result["latency_ms"] = round((time.time() - start_time) * 1000, 2)
    except Exception as e:
        result["status"] = "unhealthy"
        result["errors"].append(f"Connection test failed: {e}")
    return result
