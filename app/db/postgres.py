from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings


def make_engine(pool_size: int = 10) -> AsyncEngine:
    return create_async_engine(
        settings.postgres_url,
        echo=False,
        pool_size=pool_size,
        max_overflow=10,
        pool_pre_ping=True,
    )


engine = make_engine()

async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
