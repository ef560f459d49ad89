"""
Database engine and session management for the Farm Shop API.

SQLAlchemy async engine over aiosqlite. Three kinds of writer share the
file: request handlers, the notification dispatcher and the reservation
sweeper, so SQLite gets a generous busy timeout and enforced foreign keys.
Tables are created on startup by init_db().
"""
import logging

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 30


class Base(DeclarativeBase):
    pass


def to_async_url(url: str) -> str:
    """sqlite:///./data/farm_shop.db → sqlite+aiosqlite:///./data/farm_shop.db"""
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def enable_sqlite_foreign_keys(sync_engine: Engine) -> None:
    """SQLite ignores FOREIGN KEY clauses unless asked per connection."""
    if sync_engine.dialect.name != "sqlite":
        return

    @event.listens_for(sync_engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# ── Engine ──────────────────────────────────────────────────────────

_async_url = to_async_url(settings.database_url)

engine = create_async_engine(
    _async_url,
    connect_args={"timeout": SQLITE_BUSY_TIMEOUT_SECONDS} if _async_url.startswith("sqlite") else {},
)
enable_sqlite_foreign_keys(engine.sync_engine)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ── Helpers ─────────────────────────────────────────────────────────

async def init_db() -> None:
    """Create all tables. Called once on server startup."""
    import db_models  # noqa: F401  (registers the tables on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info(f"Database ready ({engine.url.render_as_string(hide_password=True)})")


async def dispose_db() -> None:
    await engine.dispose()


async def get_db() -> AsyncSession:
    """FastAPI dependency: one session per request; routes own commit/rollback."""
    async with async_session() as session:
        yield session
