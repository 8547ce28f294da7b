"""Tests for the SQLAlchemy provider store against an in-memory SQLite database."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from airelay.db.base import Base
from airelay.models import AIProvider
from airelay.services.llm.provider_registry import ProviderRegistry
from airelay.services.llm.provider_store import SQLAlchemyProviderStore

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        session.add_all([
            AIProvider(id="p2", organization_id="org-1", provider="anthropic", model="claude-sonnet-4-5-20250929",
                       api_key_encrypted="aa:bb:cc", created_at=T0 + timedelta(minutes=5)),
            AIProvider(id="p1", organization_id="org-1", provider="openai", model=None,
                       api_key_encrypted="dd:ee:ff", created_at=T0),
            AIProvider(id="p3", organization_id="org-1", provider="google", model="gemini-2.5-pro",
                       api_key_encrypted="11:22:33", active=False, created_at=T0),
            AIProvider(id="p4", organization_id="org-2", provider="google", model="gemini-2.5-pro",
                       api_key_encrypted="44:55:66", created_at=T0),
        ])
        await session.commit()
    yield factory
    await engine.dispose()


async def test_fetches_active_rows_oldest_first(session_factory):
    store = SQLAlchemyProviderStore(session_factory)

    rows = await store.fetch_providers("org-1")

    assert [row.id for row in rows] == ["p1", "p2"]
    assert rows[1].provider_type == "anthropic"
    assert rows[1].api_key_encrypted == "aa:bb:cc"


async def test_missing_model_uses_configured_default(session_factory):
    from airelay.core.config import get_settings

    rows = await SQLAlchemyProviderStore(session_factory).fetch_providers("org-1")

    assert rows[0].model == get_settings().openai_default_model


async def test_unknown_tenant_has_no_rows(session_factory):
    assert await SQLAlchemyProviderStore(session_factory).fetch_providers("org-404") == []


async def test_registry_over_store(session_factory):
    registry = ProviderRegistry(SQLAlchemyProviderStore(session_factory))
    providers = await registry.get_providers("org-2")
    assert [p.display_name for p in providers] == ["Gemini"]
