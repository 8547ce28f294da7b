# Crucible Community Edition
# Copyright (C) 2025 Roundtable Labs Pty Ltd
#
# Licensed under AGPL-3.0. See LICENSE file for details.
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""SQLAlchemy-backed provider store."""
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from airelay.core.config import get_settings
from airelay.models.ai_provider import AIProvider
from airelay.services.llm.provider_registry import ProviderConfig

logger = logging.getLogger(__name__)


class SQLAlchemyProviderStore:
    """Read active provider rows for an organization, oldest first."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def fetch_providers(self, tenant_id: str) -> list[ProviderConfig]:
        settings = get_settings()
        async with self.session_factory() as session:
            result = await session.execute(
                select(AIProvider)
                .where(AIProvider.organization_id == tenant_id, AIProvider.active.is_(True))
                .order_by(AIProvider.created_at.asc())
            )
            rows = result.scalars().all()

        logger.debug(f"[SQLAlchemyProviderStore.fetch_providers] {len(rows)} active rows for tenant {tenant_id}")
        return [
            ProviderConfig(
                id=row.id,
                provider_type=row.provider,
                model=row.model or settings.default_model_for(row.provider),
                api_key_encrypted=row.api_key_encrypted or "",
                created_at=row.created_at,
            )
            for row in rows
        ]
