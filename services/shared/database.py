"""SQLAlchemy engine, session factory and declarative base.

All stores (prompt cache, usage ledger, invoices, chat messages) share one
database. Sessions are created per operation from an injected
``sessionmaker`` so that tests can point every store at an in-memory SQLite
database.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from services.shared.config import Settings

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class PersistenceError(Exception):
    """Raised when a write is rejected; nothing from that write is kept."""


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Current time in UTC (default clock for every store)."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _set_sqlite_pragma(dbapi_conn, connection_record):  # type: ignore[no-untyped-def]
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for the given URL.

    In-memory SQLite URLs get a single shared connection so every session
    sees the same database.
    """
    connect_args: dict[str, object] = {}
    kwargs: dict[str, object] = {}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, echo=echo, connect_args=connect_args, **kwargs)

    if is_sqlite:
        event.listen(engine, "connect", _set_sqlite_pragma)

    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables registered on the declarative base."""
    # Import models so their tables are registered before create_all
    import services.cache.models  # noqa: F401
    import services.chat.models  # noqa: F401
    import services.invoices.models  # noqa: F401
    import services.usage.models  # noqa: F401

    Base.metadata.create_all(engine)
    logger.info(f"Database schema ready ({len(Base.metadata.tables)} tables)")


def create_session_factory(settings: Settings) -> sessionmaker[Session]:
    """Build engine + schema + session factory from settings."""
    engine = build_engine(settings.database_url, echo=settings.database_echo)
    init_db(engine)
    return build_session_factory(engine)
