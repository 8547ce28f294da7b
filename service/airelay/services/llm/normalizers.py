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

"""Vendor response normalization.

Each provider wraps its raw payload (a streamed event or a full response, as a
plain dict) in a ``ProviderEvent`` tagged with the vendor kind. One adapter per
kind turns it into the canonical ``StreamChunk`` the rest of the pipeline uses.
"""
from dataclasses import dataclass
from typing import Any, Callable

from airelay.services.llm.results import ProviderKind


class MalformedEventError(ValueError):
    """Payload does not match the vendor's documented framing."""


@dataclass(frozen=True)
class ProviderEvent:
    kind: ProviderKind
    payload: dict[str, Any]


@dataclass(frozen=True)
class StreamChunk:
    content: str
    is_final: bool = False


def _first(items: Any) -> dict[str, Any] | None:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


def normalize_openai(payload: dict[str, Any]) -> StreamChunk:
    """Chat completions: ``choices[0].delta.content`` (stream) or ``choices[0].message.content``."""
    if "error" in payload and payload["error"]:
        raise MalformedEventError(f"OpenAI stream error: {payload['error']}")
    choice = _first(payload.get("choices"))
    if choice is None:
        # Usage-only trailer chunks carry no choices
        return StreamChunk("")
    body = choice.get("delta") or choice.get("message") or {}
    content = body.get("content") or ""
    if not isinstance(content, str):
        raise MalformedEventError("OpenAI content is not a string")
    return StreamChunk(content, is_final=choice.get("finish_reason") is not None)


def normalize_anthropic(payload: dict[str, Any]) -> StreamChunk:
    """Messages API: ``content_block_delta`` events when streaming, ``content[]`` blocks otherwise."""
    event_type = payload.get("type")
    if event_type == "error":
        error = payload.get("error") or {}
        raise MalformedEventError(f"Anthropic stream error: {error.get('message', error)}")
    if event_type == "content_block_delta":
        delta = payload.get("delta") or {}
        if delta.get("type") != "text_delta":
            return StreamChunk("")
        return StreamChunk(delta.get("text") or "")
    if event_type == "message_stop":
        return StreamChunk("", is_final=True)
    if event_type == "message":
        blocks = payload.get("content") or []
        text = "".join(
            block.get("text") or ""
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        return StreamChunk(text, is_final=True)
    # message_start, content_block_start/stop, message_delta, ping
    return StreamChunk("")


def normalize_google(payload: dict[str, Any]) -> StreamChunk:
    """Gemini: ``candidates[0].content.parts[*].text``."""
    candidate = _first(payload.get("candidates"))
    if candidate is None:
        feedback = payload.get("prompt_feedback") or payload.get("promptFeedback")
        if feedback and (feedback.get("block_reason") or feedback.get("blockReason")):
            raise MalformedEventError(f"Gemini blocked the prompt: {feedback}")
        return StreamChunk("")
    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(
        part.get("text") or ""
        for part in parts
        if isinstance(part, dict) and not part.get("thought")
    )
    finish_reason = candidate.get("finish_reason") or candidate.get("finishReason")
    return StreamChunk(text, is_final=finish_reason is not None)


NORMALIZERS: dict[str, Callable[[dict[str, Any]], StreamChunk]] = {
    "openai": normalize_openai,
    "anthropic": normalize_anthropic,
    "google": normalize_google,
}


def normalize_event(event: ProviderEvent) -> StreamChunk:
    """Dispatch a tagged vendor event to its adapter."""
    adapter = NORMALIZERS.get(event.kind)
    if adapter is None:
        raise MalformedEventError(f"No normalizer for provider kind '{event.kind}'")
    if not isinstance(event.payload, dict):
        raise MalformedEventError(f"{event.kind} payload must be a mapping")
    return adapter(event.payload)
