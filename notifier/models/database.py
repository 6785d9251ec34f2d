"""Database engine and session plumbing for the notification store."""

import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from notifier.exceptions import StoreUnavailable
from notifier.utils.config import DatabaseConfig, get_config

logger = logging.getLogger(__name__)

Base = declarative_base()

# Engine and session factory - initialized lazily
_engine = None
_SessionLocal = None


def build_engine(config: DatabaseConfig) -> Engine:
    """Create an engine suited to several dispatchers sharing one store.

    SQLite connections wait on a locked database instead of failing at once,
    since lease claims from concurrent dispatchers contend for the write lock.
    Server databases get pre-ping so stale pooled connections are replaced.
    """
    if config.url.startswith("sqlite"):
        return create_engine(
            config.url,
            echo=config.echo,
            connect_args={"check_same_thread": False, "timeout": config.busy_timeout_seconds},
        )
    return create_engine(config.url, echo=config.echo, pool_pre_ping=True)


def get_engine() -> Engine:
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_config().database)
    return _engine


def get_session_factory() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


def init_db() -> None:
    """Create the notifications table if it does not exist."""
    from notifier.models import notification  # noqa: F401

    Base.metadata.create_all(bind=get_engine())
    logger.info("Notification store initialized")


def check_database(db: Session) -> str:
    """Round-trip a trivial query.

    Raises:
        StoreUnavailable: If the database cannot be reached
    """
    try:
        db.execute(text("SELECT 1"))
    except (OperationalError, InterfaceError) as e:
        raise StoreUnavailable(f"database unreachable: {e}") from e
    return "connected"


def get_db() -> Generator[Session, None, None]:
    """Get a database session for dependency injection."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_session(
    session_factory: Callable[[], Session] | None = None,
) -> Generator[Session, None, None]:
    """Unit-of-work session, committed on success.

    Args:
        session_factory: Optional factory to use instead of the global one

    Raises:
        StoreUnavailable: If the final commit loses the connection
    """
    db = (session_factory or get_session_factory())()
    try:
        yield db
        db.commit()
    except (OperationalError, InterfaceError) as e:
        db.rollback()
        logger.error(f"Commit failed, notification store unavailable: {e}")
        raise StoreUnavailable(f"commit failed: {e}") from e
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def reset_engine() -> None:
    """Dispose of the engine and forget the session factory (used by tests)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
