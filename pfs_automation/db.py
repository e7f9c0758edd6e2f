import asyncio
import logging
from typing import AsyncGenerator
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from .config import database_url
from .models import Base

log = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine tuned for the target database"""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
        engine = create_async_engine(url, echo=False, future=True, **kwargs)
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_async_engine(
        url,
        echo=False,
        future=True,
        pool_pre_ping=True,  # Verify connections before use
        pool_size=5,
        max_overflow=10,
        pool_timeout=20,
        pool_recycle=300,
        connect_args={"server_settings": {"application_name": "pfs_automation"}},
    )


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(database_url())
AsyncSessionLocal = build_session_factory(engine)


async def create_schema(bind: AsyncEngine) -> None:
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db():
    """Initialize the database by creating all tables and the setup row"""
    from .crud import ensure_setup_status

    max_retries = 3
    retry_delay = 5

    for attempt in range(max_retries):
        try:
            log.info("Database connection attempt %d/%d", attempt + 1, max_retries)
            await create_schema(engine)
            async with AsyncSessionLocal() as session:
                await ensure_setup_status(session)
            log.info("Database schema initialized")
            return
        except Exception as e:
            log.warning("Database connection attempt %d failed: %s", attempt + 1, e)
            if attempt < max_retries - 1:
                await asyncio.sleep(retry_delay)
            else:
                log.error("All database connection attempts failed")
                raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def close_db():
    """Close database connections"""
    await engine.dispose()
    log.info("Database connections closed")
