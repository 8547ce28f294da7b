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

import asyncio
import json
import logging
from contextlib import suppress

from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from airelay.api.deps import get_relay_engine, get_tenant
from airelay.core.config import get_settings
from airelay.schemas.assistant import (
    AssistantRequest,
    AssistantResponse,
    ConnectedProviderRead,
    ConnectedProvidersResponse,
)
from airelay.services.llm.engine import AIRelayEngine, PreparedRequest, TenantContext
from airelay.services.llm.streaming import QueueStreamSink, StreamSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["ai"])


async def _prepare(engine: AIRelayEngine, tenant: TenantContext, payload: AssistantRequest) -> PreparedRequest:
    return await engine.prepare(
        tenant,
        payload.message,
        system_prompt=payload.system_prompt,
        quick_action_id=payload.quick_action_id,
        preferred_provider=payload.preferred_provider,
        task_type=payload.task_type,
        temperature=payload.temperature,
        max_tokens=payload.max_tokens,
    )


@router.post("/assistant", response_model=AssistantResponse, summary="Ask the AI assistant")
async def ask_assistant(
    payload: AssistantRequest,
    tenant: TenantContext = Depends(get_tenant),
    engine: AIRelayEngine = Depends(get_relay_engine),
) -> AssistantResponse:
    prepared = await _prepare(engine, tenant, payload)
    result = await engine.generate(prepared)
    return AssistantResponse(
        response=result.text,
        providerLabel=result.provider_label,
        provider=result.provider.provider_type,
        degraded=result.degraded,
        taskType=prepared.task.value,
        attempts=[attempt.to_dict() for attempt in result.attempts],
    )


@router.post("/assistant/stream", summary="Stream the AI assistant's answer over SSE")
async def stream_assistant(
    payload: AssistantRequest,
    tenant: TenantContext = Depends(get_tenant),
    engine: AIRelayEngine = Depends(get_relay_engine),
):
    """Stream an answer as server-sent events.
    
    Admission errors (rate limits, quota, no providers) are raised here as
    normal JSON responses. Once the stream opens, every failure arrives as a
    terminal ``{"error": true, ...}`` event instead.
    """
    prepared = await _prepare(engine, tenant, payload)
    sink = QueueStreamSink(max_pending=get_settings().stream_max_pending_events)
    session = StreamSession(sink)

    async def produce():
        try:
            await engine.stream(prepared, session)
        finally:
            sink.close()

    async def event_generator():
        producer = asyncio.create_task(produce())
        try:
            async for event in sink.events():
                yield {"event": "message", "data": json.dumps(event)}
        finally:
            if not producer.done():
                logger.info(f"[stream_assistant] Client disconnected, cancelling org={tenant.organization_id}")
                producer.cancel()
            with suppress(asyncio.CancelledError):
                await producer

    return EventSourceResponse(event_generator())


@router.get("/providers", response_model=ConnectedProvidersResponse, summary="List connected AI providers")
async def list_providers(
    tenant: TenantContext = Depends(get_tenant),
    engine: AIRelayEngine = Depends(get_relay_engine),
) -> ConnectedProvidersResponse:
    connected = await engine.list_providers(tenant)
    return ConnectedProvidersResponse(
        providers=[
            ConnectedProviderRead(
                id=p.id,
                provider=p.provider_type,
                providerLabel=p.display_name,
                model=p.model,
            )
            for p in connected.providers
        ],
        fetchError=connected.fetch_error,
        errorMessage=connected.error_message,
    )
