from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from airelay.core.config import get_settings


# The service only reads provider configuration, so a small pool is enough.
# pool_pre_ping verifies connections before use; pool_recycle prevents stale connections.
@lru_cache
def get_engine() -> AsyncEngine:
    settings = get_settings()
    if not settings.database_url:
        raise RuntimeError("AIRELAY_DATABASE_URL is not configured")
    options: dict = {"echo": False, "future": True}
    if not settings.database_url.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=5, pool_pre_ping=True, pool_recycle=1800)
    return create_async_engine(settings.database_url, **options)


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        get_engine(),
        expire_on_commit=False,
        class_=AsyncSession,
    )
