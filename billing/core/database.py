import json
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from billing.config import settings


def _json_serializer(value: Any) -> str:
    # JSONB audit details carry Decimal amounts, datetimes and UUIDs
    return json.dumps(value, default=str)


def _session_maker(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(  # type: ignore[call-overload]
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


# Pooled engine: API requests and webhook deliveries.
# One request or delivery = one session = one transaction.
engine = create_async_engine(
    settings.database_url,
    echo=False,
    json_serializer=_json_serializer,
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,
    pool_recycle=300,
    pool_timeout=30,
    connect_args={"command_timeout": 60},
)

# Direct engine: DDL and the scheduler. pg_try_advisory_lock is session-scoped,
# so the lock and its unlock must run on the same backend connection.
direct_engine = create_async_engine(
    settings.database_url_direct,
    echo=False,
    json_serializer=_json_serializer,
    pool_size=3,
    max_overflow=5,
    pool_pre_ping=True,
    connect_args={"command_timeout": 300},
)

async_session_maker = _session_maker(engine)
direct_session_maker = _session_maker(direct_engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield the request's session and own its transaction.

    Commits when the handler returns normally. Any exception raised by the
    handler, including a billing rule surfaced as an HTTPException, rolls back
    everything the request wrote (a trial claim included).
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create missing tables. Debug only; deployed databases are migrated with Alembic."""
    async with direct_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
