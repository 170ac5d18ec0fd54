"""Async engine, session factory and the FastAPI session dependency."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from referral_desk.app.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for the referral and deal tables."""
    pass


settings = get_settings()

# Deal and referral writes share one local SQLite file by default
_is_sqlite = settings.database_url.startswith("sqlite")

engine = create_async_engine(
    settings.database_url,
    connect_args={"check_same_thread": False, "timeout": 30} if _is_sqlite else {},
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """Yield a session per request; routes commit, the context closes it."""
    async with async_session() as session:
        yield session


async def init_db():
    """Create the referral and deal tables if they do not exist."""
    import referral_desk.domain.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Dashboard reads proceed while a deal write holds the lock
    if _is_sqlite:
        async with engine.begin() as conn:
            await conn.execute(text("PRAGMA journal_mode=WAL"))
