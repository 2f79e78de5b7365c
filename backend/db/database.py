from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import settings


class Base(DeclarativeBase):
    pass


engine = create_async_engine(settings.database_url, echo=settings.database_echo, pool_pre_ping=True)
async_session_maker = async_sessionmaker(engine, expire_on_commit=False)


async def create_db_and_tables(bind=None):
    # Register every mapped table on Base.metadata before create_all
    import db.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_session_maker() -> async_sessionmaker:
    """FastAPI dependency: the session factory handed to the inventory store client."""
    return async_session_maker


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column in this schema stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
