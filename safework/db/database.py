from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from safework.config import settings


class Base(DeclarativeBase):
    pass


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing applies to server databases only."""
    options: dict[str, Any] = {"echo": echo}
    if make_url(url).get_backend_name() == "postgresql":
        options.update(
            pool_pre_ping=True,
            pool_size=20,
            max_overflow=30,
            pool_timeout=30,
            pool_recycle=1800,  # Recycle connections every 30 minutes
            connect_args={
                "server_settings": {
                    "statement_timeout": "30000",
                    "idle_in_transaction_session_timeout": "60000",
                }
            },
        )
    return create_async_engine(url, **options)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Objects stay readable after commit; registry and tracker return them
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url, echo=settings.debug)

async_session_factory = create_session_factory(engine)


async def init_db() -> None:
    """Initialize database connection and create tables if needed."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
