# paperless_ai_db/db.py
import logging
from typing import Optional

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from paperless_ai_db.config import Settings, settings
from paperless_ai_db.models import Base

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    # pysqlite only emits BEGIN before DML; _begin_sqlite_transaction emits it instead
    dbapi_connection.isolation_level = None


def _begin_sqlite_transaction(conn) -> None:
    conn.exec_driver_sql("BEGIN")


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Build an async engine for the given URL.
    SQLite connections get foreign key enforcement switched on, which SQLite
    leaves off by default, and an explicit BEGIN at the start of every
    transaction so reads and SAVEPOINTs run inside it.
    """
    engine = create_async_engine(database_url, echo=echo, future=True)
    if make_url(database_url).get_backend_name() == "sqlite":
        event.listen(engine.sync_engine, "connect", _configure_sqlite_connection)
        event.listen(engine.sync_engine, "begin", _begin_sqlite_transaction)
    logger.info("Database engine created for %s", make_url(database_url).render_as_string(hide_password=True))
    return engine


def get_engine(app_settings: Optional[Settings] = None) -> AsyncEngine:
    """Return the process-wide engine built from settings."""
    global _engine
    if _engine is None:
        app_settings = app_settings or settings
        _engine = create_engine(app_settings.database_url, echo=app_settings.db_echo)
    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)


async def init_models(engine: Optional[AsyncEngine] = None) -> None:
    """
    Development helper that creates tables from ORM metadata.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created/checked")


async def drop_models(engine: Optional[AsyncEngine] = None) -> None:
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.info("Database tables dropped")


async def close_engine(engine: Optional[AsyncEngine] = None) -> None:
    """Call this on shutdown to cleanly dispose connection pool."""
    global _engine
    target = engine or _engine
    if target is None:
        return
    await target.dispose()
    if target is _engine:
        _engine = None
    logger.info("Database engine disposed")
