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

"""Sequential provider fallback.

The loop is an explicit state machine::

    SELECT_NEXT --(no candidates left)--> EXHAUSTED
    SELECT_NEXT --> ATTEMPT --(fallback)--> SELECT_NEXT
                    ATTEMPT --(success | accepted soft failure)--> done
                    ATTEMPT --(classified as no-fallback)--> abort

Candidates are tried one at a time. Usage is counted once per served request
and never for an exhausted or aborted one.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Literal, Sequence

from airelay.core.encryption import CredentialDecryptError, decrypt_api_key
from airelay.core.exceptions import AllProvidersFailedError, APIError, InvalidRequestError
from airelay.core.usage import UsageCounter
from airelay.services.llm.classifier import (
    ClassifiedError,
    ErrorCode,
    classify_failure,
    sanitize_error_message,
    summarize_failures,
)
from airelay.services.llm.provider_registry import ProviderConfig
from airelay.services.llm.providers import BaseLLMProvider, create_provider
from airelay.services.llm.results import CallResult, ProviderFailure
from airelay.services.llm.soft_failure import SoftFailureResult, detect_soft_failure
from airelay.services.llm.streaming import StreamingRelay, StreamSession

logger = logging.getLogger(__name__)

AttemptOutcome = Literal["success", "soft_failure", "hard_failure"]


class AttemptState(Enum):
    SELECT_NEXT = "select_next"
    ATTEMPT = "attempt"
    EXHAUSTED = "exhausted"


class SoftFailurePolicy(str, Enum):
    """When a soft-failure response may be returned as a degraded answer."""
    LAST_RESORT = "last_resort"      # only from the final candidate
    ALWAYS_ERROR = "always_error"    # never; keep falling back and exhaust
    ALWAYS_ACCEPT = "always_accept"  # from any candidate

    def accepts(self, is_last_candidate: bool) -> bool:
        if self is SoftFailurePolicy.ALWAYS_ACCEPT:
            return True
        if self is SoftFailurePolicy.LAST_RESORT:
            return is_last_candidate
        return False


@dataclass
class GenerationRequest:
    prompt: str
    system_prompt: str | None = None
    temperature: float = 0.7
    max_tokens: int = 2048


@dataclass
class AttemptRecord:
    provider: str
    provider_label: str
    outcome: AttemptOutcome
    error_code: str | None = None
    message: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "providerLabel": self.provider_label,
            "outcome": self.outcome,
            "errorCode": self.error_code,
            "message": self.message,
            "timestamp": self.timestamp,
        }


@dataclass
class FallbackResult:
    text: str
    provider: ProviderConfig
    degraded: bool = False
    soft_failure_pattern: str | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def provider_label(self) -> str:
        return self.provider.display_name


def _abort_error(classified: ClassifiedError, attempts: list[AttemptRecord]) -> APIError:
    details = {"provider": classified.provider, "attempts": [a.to_dict() for a in attempts]}
    if classified.error_type is ErrorCode.INVALID_REQUEST:
        return InvalidRequestError(classified.user_message, details=details)
    return APIError(
        code=classified.error_type.value,
        message=classified.user_message,
        status_code=504 if classified.error_type is ErrorCode.STREAM_TIMEOUT else 502,
        details=details,
    )


class FallbackOrchestrator:
    """Try ordered candidates until one produces a usable answer."""

    def __init__(
        self,
        *,
        usage_counter: UsageCounter | None = None,
        decrypt: Callable[[str], str] = decrypt_api_key,
        provider_factory: Callable[[str, str, str | None], BaseLLMProvider] = create_provider,
        relay: StreamingRelay | None = None,
        soft_failure_policy: SoftFailurePolicy = SoftFailurePolicy.LAST_RESORT,
        call_timeout: float = 60.0,
    ):
        self.usage_counter = usage_counter or UsageCounter()
        self.decrypt = decrypt
        self.provider_factory = provider_factory
        self.relay = relay or StreamingRelay()
        self.soft_failure_policy = SoftFailurePolicy(soft_failure_policy)
        self.call_timeout = call_timeout

    def _resolve_provider(self, config: ProviderConfig) -> BaseLLMProvider | ProviderFailure:
        try:
            api_key = self.decrypt(config.api_key_encrypted)
        except CredentialDecryptError as e:
            logger.warning(f"[FallbackOrchestrator._resolve_provider] {config.display_name} key unusable: {e}")
            return ProviderFailure(config.provider_type, "decrypt", str(e))
        try:
            return self.provider_factory(config.provider_type, api_key, config.model)
        except ValueError as e:
            return ProviderFailure(config.provider_type, "unknown", str(e))

    async def _attempt(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        session: StreamSession | None,
    ) -> CallResult:
        provider = self._resolve_provider(config)
        if isinstance(provider, ProviderFailure):
            return CallResult.error(provider)

        if session is None:
            return await provider.complete(
                request.prompt,
                timeout=self.call_timeout,
                system_prompt=request.system_prompt,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )

        events = provider.stream(
            request.prompt,
            system_prompt=request.system_prompt,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )
        outcome = await self.relay.relay(provider, events, session, config.display_name)
        if outcome.ok:
            return CallResult.success(outcome.text)
        return CallResult.error(outcome.failure)

    def _record_usage(self, tenant_id: str) -> None:
        try:
            self.usage_counter.increment_usage(tenant_id)
        except Exception as e:
            # The answer was already produced; a counter outage must not turn it into an error
            logger.error(f"[FallbackOrchestrator._record_usage] Failed to record usage for {tenant_id}: {e}")

    async def run(
        self,
        tenant_id: str,
        candidates: Sequence[ProviderConfig],
        request: GenerationRequest,
        session: StreamSession | None = None,
    ) -> FallbackResult:
        """Run the fallback chain.
        
        Args:
            tenant_id: Organization whose usage is counted
            candidates: Providers in attempt order
            request: Prompt and sampling parameters
            session: Streaming session; None for a single complete response
            
        Returns:
            FallbackResult for the first usable answer
            
        Raises:
            InvalidRequestError: A provider rejected the request itself
            APIError: Another no-fallback failure (e.g. STREAM_TIMEOUT)
            AllProvidersFailedError: Every candidate failed
        """
        attempts: list[AttemptRecord] = []
        failures: list[ClassifiedError] = []
        state = AttemptState.SELECT_NEXT
        index = -1

        while True:
            if state is AttemptState.SELECT_NEXT:
                index += 1
                state = AttemptState.ATTEMPT if index < len(candidates) else AttemptState.EXHAUSTED
                continue

            if state is AttemptState.EXHAUSTED:
                raise self._exhausted(attempts, failures)

            config = candidates[index]
            label = config.display_name
            is_last = index == len(candidates) - 1
            logger.info(f"[FallbackOrchestrator.run] Attempt {index + 1}/{len(candidates)}: {label} ({config.model})")

            result = await self._attempt(config, request, session)

            if not result.ok:
                classified = classify_failure(result.failure)
                failures.append(classified)
                attempts.append(AttemptRecord(
                    provider=config.provider_type,
                    provider_label=label,
                    outcome="hard_failure",
                    error_code=classified.error_type.value,
                    message=sanitize_error_message(result.failure.message),
                ))
                logger.warning(
                    f"[FallbackOrchestrator.run] {label} failed: {classified.error_type.value} "
                    f"({classified.reason.value}) - {attempts[-1].message}"
                )
                if not classified.should_fallback:
                    logger.warning(f"[FallbackOrchestrator.run] {classified.error_type.value} is not recoverable, aborting")
                    raise _abort_error(classified, attempts)
                if session is not None:
                    await session.discard(label)
                state = AttemptState.SELECT_NEXT
                continue

            detection: SoftFailureResult = detect_soft_failure(result.text)
            if detection.is_soft_failure and not self.soft_failure_policy.accepts(is_last):
                failure = ProviderFailure(config.provider_type, "soft_failure", detection.matched_pattern or "")
                failures.append(classify_failure(failure))
                attempts.append(AttemptRecord(
                    provider=config.provider_type,
                    provider_label=label,
                    outcome="soft_failure",
                    error_code=ErrorCode.SOFT_FAILURE.value,
                    message=sanitize_error_message(f"matched '{detection.matched_pattern}'"),
                ))
                logger.warning(f"[FallbackOrchestrator.run] {label} soft failure: '{detection.matched_pattern}'")
                if session is not None:
                    await session.discard(label)
                state = AttemptState.SELECT_NEXT
                continue

            if detection.is_soft_failure:
                logger.warning(f"[FallbackOrchestrator.run] Accepting degraded answer from {label} as last resort")
            attempts.append(AttemptRecord(
                provider=config.provider_type,
                provider_label=label,
                outcome="soft_failure" if detection.is_soft_failure else "success",
                error_code=ErrorCode.SOFT_FAILURE.value if detection.is_soft_failure else None,
            ))
            self._record_usage(tenant_id)
            return FallbackResult(
                text=result.text or "",
                provider=config,
                degraded=detection.is_soft_failure,
                soft_failure_pattern=detection.matched_pattern,
                attempts=attempts,
            )

    def _exhausted(self, attempts: list[AttemptRecord], failures: list[ClassifiedError]) -> AllProvidersFailedError:
        labels = [a.provider_label for a in attempts]
        top, message = summarize_failures(failures, labels)
        logger.error(f"[FallbackOrchestrator.run] All providers failed: {', '.join(labels) or 'none'}")
        return AllProvidersFailedError(
            message=message,
            error_type=(top.error_type.value if top else ErrorCode.PROVIDER_UNAVAILABLE.value),
            providers_attempted=list(dict.fromkeys(a.provider for a in attempts)),
            attempts=[a.to_dict() for a in attempts],
            dashboard_url=top.dashboard_url if top else None,
        )
