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

"""Request-level entry point for AI assistant calls.

``prepare`` does every check that can reject a request before any provider is
contacted (rate limits, monthly quota, provider lookup, selection). Its errors
surface as plain JSON responses. ``generate`` and ``stream`` then run the
fallback chain over the prepared candidates.
"""
import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from airelay.core.config import Settings, get_settings
from airelay.core.exceptions import (
    AILimitReachedError,
    APIError,
    NoProvidersError,
    ProviderFetchError,
    RateLimitExceededError,
)
from airelay.core.plans import get_plan_quotas, has_unlimited_ai, normalize_plan
from airelay.core.rate_limiter import RateLimiter, RateLimitGroup
from airelay.core.usage import UsageCounter
from airelay.services.llm.orchestrator import (
    FallbackOrchestrator,
    FallbackResult,
    GenerationRequest,
    SoftFailurePolicy,
)
from airelay.services.llm.provider_cache import ProviderCache
from airelay.services.llm.provider_registry import (
    ConnectedProviders,
    ProviderConfig,
    ProviderRegistry,
    RegistryFetchError,
)
from airelay.services.llm.provider_store import SQLAlchemyProviderStore
from airelay.services.llm.selector import (
    TaskCategory,
    infer_task_category,
    normalize_task_category,
    select_order,
)
from airelay.services.llm.streaming import StreamingRelay, StreamSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantContext:
    user_id: str
    organization_id: str
    plan: str = "free"


@dataclass
class PreparedRequest:
    tenant: TenantContext
    task: TaskCategory
    candidates: list[ProviderConfig]
    request: GenerationRequest
    rate_limit_group: RateLimitGroup = "ai_generic"
    preferred_provider: str | None = None


def rate_limit_group_for(quick_action_id: str | None, task: TaskCategory) -> RateLimitGroup:
    if quick_action_id == "plan_my_day":
        return "plan_my_day"
    if task is TaskCategory.CHART_INSIGHT:
        return "ai_insights"
    return "ai_generic"


class AIRelayEngine:
    """Admission control, provider selection and fallback for one app instance."""

    def __init__(
        self,
        registry: ProviderRegistry,
        orchestrator: FallbackOrchestrator,
        rate_limiter: RateLimiter | None = None,
        usage_counter: UsageCounter | None = None,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.orchestrator = orchestrator
        self.rate_limiter = rate_limiter or RateLimiter()
        self.usage_counter = usage_counter or orchestrator.usage_counter
        self.settings = settings or get_settings()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: Callable[[], AsyncSession],
    ) -> "AIRelayEngine":
        """Wire the production components from configuration."""
        cache = ProviderCache(
            ttl_seconds=settings.provider_cache_ttl_seconds,
            max_entries=settings.provider_cache_max_entries,
        )
        usage_counter = UsageCounter()
        orchestrator = FallbackOrchestrator(
            usage_counter=usage_counter,
            relay=StreamingRelay(watchdog_seconds=settings.stream_watchdog_seconds),
            soft_failure_policy=SoftFailurePolicy(settings.soft_failure_policy),
            call_timeout=settings.provider_call_timeout_seconds,
        )
        return cls(
            registry=ProviderRegistry(SQLAlchemyProviderStore(session_factory), cache),
            orchestrator=orchestrator,
            rate_limiter=RateLimiter(),
            usage_counter=usage_counter,
            settings=settings,
        )

    def _check_rate_limits(self, tenant: TenantContext, group: RateLimitGroup) -> None:
        result = self.rate_limiter.check_plan_limits(tenant.user_id, tenant.organization_id, tenant.plan, group)
        if not result.allowed:
            raise RateLimitExceededError(
                message=result.message,
                retry_after=result.retry_after,
                limit=result.limit,
                remaining=result.remaining or 0,
                reset_at=result.reset_at,
                details={"bucket": result.exceeded_bucket.name if result.exceeded_bucket else None},
            )

    def _check_monthly_quota(self, tenant: TenantContext) -> None:
        if not self.settings.enforce_monthly_quota or has_unlimited_ai(tenant.plan):
            return
        limit = get_plan_quotas(tenant.plan).monthly_ai_requests
        try:
            used = self.usage_counter.get_usage(tenant.organization_id)
        except Exception as e:
            # Fail open like the rate limiter
            logger.error(f"[AIRelayEngine._check_monthly_quota] Usage lookup failed: {e}")
            return
        if used >= limit:
            logger.info(
                f"[AIRelayEngine._check_monthly_quota] org={tenant.organization_id} "
                f"reached {used}/{limit} ({normalize_plan(tenant.plan)})"
            )
            raise AILimitReachedError(used=used, limit=limit, plan=normalize_plan(tenant.plan))

    async def prepare(
        self,
        tenant: TenantContext,
        message: str,
        *,
        system_prompt: str | None = None,
        quick_action_id: str | None = None,
        preferred_provider: str | None = None,
        task_type: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> PreparedRequest:
        """Admit a request and pick its candidate order.
        
        Raises:
            RateLimitExceededError: A rate-limit bucket is full
            AILimitReachedError: The monthly plan quota is used up
            ProviderFetchError: Provider settings could not be loaded
            NoProvidersError: The organization has no usable provider
        """
        task = normalize_task_category(task_type) if task_type else infer_task_category(message, quick_action_id)
        group = rate_limit_group_for(quick_action_id, task)

        self._check_rate_limits(tenant, group)
        self._check_monthly_quota(tenant)

        try:
            providers = await self.registry.get_providers(tenant.organization_id)
        except RegistryFetchError as e:
            logger.error(f"[AIRelayEngine.prepare] {e}")
            raise ProviderFetchError() from e
        if not providers:
            raise NoProvidersError()

        candidates = select_order(providers, task, preferred_provider)
        logger.info(
            f"[AIRelayEngine.prepare] task={task.value} group={group} order="
            f"{[c.display_name for c in candidates]}"
        )
        return PreparedRequest(
            tenant=tenant,
            task=task,
            candidates=candidates,
            request=GenerationRequest(
                prompt=message,
                system_prompt=system_prompt,
                temperature=self.settings.default_temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.settings.default_max_tokens,
            ),
            rate_limit_group=group,
            preferred_provider=preferred_provider,
        )

    async def generate(self, prepared: PreparedRequest) -> FallbackResult:
        """Run the fallback chain for a single complete response."""
        return await self.orchestrator.run(
            prepared.tenant.organization_id,
            prepared.candidates,
            prepared.request,
        )

    async def stream(self, prepared: PreparedRequest, session: StreamSession) -> None:
        """Run the fallback chain into ``session``; always ends with one terminal event."""
        try:
            result = await self.orchestrator.run(
                prepared.tenant.organization_id,
                prepared.candidates,
                prepared.request,
                session=session,
            )
        except APIError as e:
            await session.fail(e.code, e.message, details=e.details)
            return
        except Exception as e:
            logger.error(f"[AIRelayEngine.stream] Unexpected error: {e}", exc_info=True)
            await session.fail("INTERNAL_ERROR", "An internal error occurred")
            return

        await session.complete(
            result.provider_label,
            degraded=result.degraded,
            provider=result.provider.provider_type,
            taskType=prepared.task.value,
        )

    async def list_providers(self, tenant: TenantContext) -> ConnectedProviders:
        return await self.registry.get_connected_providers(tenant.organization_id)
