import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from clinicbook.core.config import settings
from clinicbook.core.errors import StorageFailure

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def to_async_url(database_url: str) -> str:
    """Map a plain database URL onto its async driver.

    asyncpg does not accept psycopg params like sslmode/channel_binding, so those
    are stripped; SSL is enabled via connect_args instead.
    """
    url = make_url(database_url)
    url = url.set(drivername=_ASYNC_DRIVERS.get(url.drivername, url.drivername))
    url = url.difference_update_query(["sslmode", "channel_binding"])
    return url.render_as_string(hide_password=False)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    url = to_async_url(database_url)
    kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
    if url.startswith("postgresql"):
        connect_args: dict[str, Any] = {"command_timeout": settings.storage_timeout_seconds}
        if settings.database_ssl:
            connect_args["ssl"] = True
        kwargs.update(pool_size=5, max_overflow=10, connect_args=connect_args)
    elif url.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": settings.storage_timeout_seconds}
    return create_async_engine(url, **kwargs)


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url, echo=settings.env == "development")
async_session_maker = build_session_maker(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def storage_guard(timeout: float | None = None) -> AsyncIterator[None]:
    """Bound a block of storage calls in time and turn transient failures into StorageFailure."""
    try:
        async with asyncio.timeout(timeout if timeout is not None else settings.storage_timeout_seconds):
            yield
    except TimeoutError as e:
        raise StorageFailure("Storage call timed out") from e
    except OperationalError as e:
        raise StorageFailure(f"Storage unavailable: {e.orig}") from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise StorageFailure("Storage connection lost") from e
        raise


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create tables if using create_all; prefer Alembic in production."""
    import clinicbook.models  # noqa: F401 - register tables

    async with (bind or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
