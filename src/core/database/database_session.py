"""
Engine and session handling for the inventory engine.

Sessions are thread-local through ``scoped_session`` so concurrent
reservation attempts never share a session. Tenant-scoped services do not
open sessions themselves; they receive a ``TenantContext`` built on a
session from ``get_db_session()``.
"""

import logging
import os
import time
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any
from urllib.parse import urlparse

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, SQLAlchemyError
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from src.core.config import get_config
from src.core.database.db_config import get_connection_string

logger = logging.getLogger(__name__)

APPLICATION_NAME = "podcast-inventory"
PGBOUNCER_PORT = 6543

# Seconds get_db_session() refuses new sessions after a lost connection
FAIL_FAST_SECONDS = 10
HEALTH_CHECK_INTERVAL = 60

_engine: Engine | None = None
_scoped_session: scoped_session | None = None


class _HealthState:
    """Circuit breaker shared by get_db_session() and check_database_health()."""

    def __init__(self) -> None:
        self.healthy = True
        self.checked_at = 0.0

    def mark(self, healthy: bool) -> None:
        self.healthy = healthy
        self.checked_at = time.time()

    def failing_fast(self) -> bool:
        return not self.healthy and time.time() - self.checked_at < FAIL_FAST_SECONDS

    def is_fresh(self) -> bool:
        return time.time() - self.checked_at < HEALTH_CHECK_INTERVAL


_health = _HealthState()


def _is_pgbouncer_connection(connection_string: str) -> bool:
    """True when USE_PGBOUNCER is set or the URL points at PgBouncer's port."""
    if os.environ.get("USE_PGBOUNCER", "false").lower() == "true":
        return True
    try:
        return urlparse(connection_string).port == PGBOUNCER_PORT
    except ValueError:
        return f":{PGBOUNCER_PORT}" in connection_string


def _pool_settings(connection_string: str) -> dict[str, Any]:
    """Pool sizing: small and without pre-ping behind PgBouncer, larger for direct connections."""
    if _is_pgbouncer_connection(connection_string):
        logger.info("PgBouncer detected - using a small pool without pre-ping")
        return {"pool_size": 2, "max_overflow": 5, "pool_recycle": 300, "pool_pre_ping": False}
    return {"pool_size": 10, "max_overflow": 20, "pool_recycle": 3600, "pool_pre_ping": True}


def get_engine() -> Engine:
    """Get or create the database engine (lazy initialization)."""
    if _engine is None:
        # Unit tests mock database access; integration tests bind their own engine
        if os.environ.get("INVENTORY_TESTING") and not os.environ.get("DATABASE_URL"):
            raise RuntimeError(
                "Unit tests should not create real database connections. "
                "Either mock get_db_session() or use the integration_db fixture."
            )

        connection_string = get_connection_string()
        if not connection_string.startswith("postgresql"):
            raise ValueError("Only PostgreSQL is supported. Use DATABASE_URL=postgresql://...")

        db_settings = get_config().database
        statement_timeout_ms = db_settings.query_timeout * 1000
        engine = create_engine(
            connection_string,
            pool_timeout=db_settings.pool_timeout,
            connect_args={"connect_timeout": db_settings.connect_timeout, "application_name": APPLICATION_NAME},
            **_pool_settings(connection_string),
        )

        # SET rather than a startup option so it also works through PgBouncer
        @event.listens_for(engine, "connect")
        def set_statement_timeout(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute(f"SET statement_timeout = '{statement_timeout_ms}'")
            cursor.close()

        bind_engine(engine)
        logger.info("Database engine created")

    assert _engine is not None
    return _engine


def bind_engine(engine: Engine) -> None:
    """Install ``engine`` as the process-wide engine.

    Used by ``get_engine()`` and by test fixtures that supply their own engine.
    """
    global _engine, _scoped_session
    _engine = engine
    _scoped_session = scoped_session(sessionmaker(bind=engine, expire_on_commit=False))


def reset_engine() -> None:
    """Close pooled connections and forget the engine."""
    global _engine, _scoped_session
    if _scoped_session is not None:
        _scoped_session.remove()
        _scoped_session = None
    if _engine is not None:
        _engine.dispose()
        _engine = None


def reset_health_state() -> None:
    """Clear the circuit breaker (tests)."""
    _health.mark(True)
    _health.checked_at = 0.0


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions with automatic cleanup.

    Usage:
        with get_db_session() as session:
            ctx = TenantContextResolver().resolve(session, principal)
            ...

    The session is rolled back on any exception and always closed. Commits
    are explicit. A lost connection makes new sessions fail fast for a few
    seconds instead of piling up on a dead database.
    """
    if _health.failing_fast():
        raise RuntimeError("Database is unhealthy - failing fast to prevent cascading failures")

    if _scoped_session is None:
        get_engine()
    scoped = _scoped_session
    session = scoped()
    try:
        yield session
    except DisconnectionError as e:
        logger.error(f"Database connection lost: {e}")
        session.rollback()
        _health.mark(False)
        raise
    except SQLAlchemyError as e:
        logger.error(f"Database error: {e}")
        session.rollback()
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
        scoped.remove()


def check_database_health(force: bool = False) -> tuple[bool, str]:
    """Run ``SELECT 1``. Between checks the last result is reported as ``cached``."""
    if not force and _health.is_fresh():
        return _health.healthy, "cached"

    try:
        with get_db_session() as session:
            session.execute(text("SELECT 1")).scalar()
    except (SQLAlchemyError, RuntimeError) as e:
        _health.mark(False)
        message = f"Database unhealthy: {type(e).__name__}: {str(e)[:100]}"
        logger.error(message)
        return False, message

    _health.mark(True)
    return True, "healthy"
