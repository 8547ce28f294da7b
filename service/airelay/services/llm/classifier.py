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

"""Classify provider failures into the small taxonomy that drives fallback.

This is the only module that decides whether a failure lets the orchestrator
move on to the next provider. Classification is a pure function of a
``ProviderFailure``; vendor exceptions are converted into that shape by the
provider wrappers (or by :func:`classify` for arbitrary exceptions).
"""
import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

import httpx

from airelay.core.encryption import CredentialDecryptError
from airelay.core.logging import sanitize_log_message
from airelay.services.llm.results import ProviderFailure


class ErrorCode(str, Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_API_KEY = "INVALID_API_KEY"
    RATE_LIMITED = "RATE_LIMITED"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    KEY_DECRYPT_FAILED = "KEY_DECRYPT_FAILED"
    STREAM_TIMEOUT = "STREAM_TIMEOUT"
    SOFT_FAILURE = "SOFT_FAILURE"
    ALL_PROVIDERS_FAILED = "ALL_PROVIDERS_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    AI_LIMIT_REACHED = "AI_LIMIT_REACHED"
    NO_PROVIDERS = "NO_PROVIDERS"
    REGISTRY_FETCH_ERROR = "PROVIDER_FETCH_ERROR"


class FailureReason(str, Enum):
    """Vendor-level refinement used for messaging and summary priority."""
    BILLING_REQUIRED = "BILLING_REQUIRED"
    INSUFFICIENT_QUOTA = "INSUFFICIENT_QUOTA"
    INVALID_KEY = "INVALID_KEY"
    AUTH_ERROR = "AUTH_ERROR"
    KEY_DECRYPT_FAILED = "KEY_DECRYPT_FAILED"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    SOFT_FAILURE = "SOFT_FAILURE"
    CONTENT_POLICY = "CONTENT_POLICY"
    CONTEXT_LENGTH = "CONTEXT_LENGTH"
    UNKNOWN = "UNKNOWN"


# Most actionable first
REASON_PRIORITY: tuple[FailureReason, ...] = tuple(FailureReason)

# error type, should_fallback, retryable
_REASON_RULES: dict[FailureReason, tuple[ErrorCode, bool, bool]] = {
    FailureReason.BILLING_REQUIRED: (ErrorCode.RATE_LIMITED, True, False),
    FailureReason.INSUFFICIENT_QUOTA: (ErrorCode.RATE_LIMITED, True, False),
    FailureReason.INVALID_KEY: (ErrorCode.INVALID_API_KEY, True, False),
    FailureReason.AUTH_ERROR: (ErrorCode.INVALID_API_KEY, True, False),
    FailureReason.KEY_DECRYPT_FAILED: (ErrorCode.KEY_DECRYPT_FAILED, True, False),
    FailureReason.MODEL_NOT_FOUND: (ErrorCode.PROVIDER_UNAVAILABLE, True, False),
    FailureReason.RATE_LIMIT: (ErrorCode.RATE_LIMITED, True, True),
    FailureReason.TIMEOUT: (ErrorCode.PROVIDER_UNAVAILABLE, True, True),
    FailureReason.SERVICE_UNAVAILABLE: (ErrorCode.PROVIDER_UNAVAILABLE, True, True),
    FailureReason.NETWORK_ERROR: (ErrorCode.PROVIDER_UNAVAILABLE, True, True),
    FailureReason.SOFT_FAILURE: (ErrorCode.SOFT_FAILURE, True, True),
    FailureReason.CONTENT_POLICY: (ErrorCode.INVALID_REQUEST, False, False),
    FailureReason.CONTEXT_LENGTH: (ErrorCode.INVALID_REQUEST, False, False),
    FailureReason.UNKNOWN: (ErrorCode.PROVIDER_UNAVAILABLE, True, True),
}

VENDOR_NAMES = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "google": "Google AI",
}

PROVIDER_DASHBOARD_URLS: dict[str, dict[str, str]] = {
    "openai": {
        "billing": "https://platform.openai.com/account/billing/overview",
        "api_keys": "https://platform.openai.com/api-keys",
        "models": "https://platform.openai.com/docs/models",
    },
    "anthropic": {
        "billing": "https://console.anthropic.com/settings/plans",
        "api_keys": "https://console.anthropic.com/settings/keys",
    },
    "google": {
        "billing": "https://aistudio.google.com/app/plan",
        "api_keys": "https://aistudio.google.com/app/apikey",
        "models": "https://ai.google.dev/gemini-api/docs/models/gemini",
    },
}

_MESSAGES: dict[FailureReason, str] = {
    FailureReason.BILLING_REQUIRED: "{vendor} billing setup required. Add a payment method or credits to continue.",
    FailureReason.INSUFFICIENT_QUOTA: "Your {vendor} quota or credits have been exhausted.",
    FailureReason.INVALID_KEY: "Your {vendor} API key is invalid or has been revoked.",
    FailureReason.AUTH_ERROR: "{vendor} authentication failed. Your API key may be invalid or lack permissions.",
    FailureReason.KEY_DECRYPT_FAILED: "The stored {vendor} API key could not be read. Please reconnect it.",
    FailureReason.MODEL_NOT_FOUND: "The configured {vendor} model is not available or has been deprecated.",
    FailureReason.RATE_LIMIT: "{vendor} rate limit reached. Please wait a moment.",
    FailureReason.TIMEOUT: "{vendor} request timed out. Please try again.",
    FailureReason.SERVICE_UNAVAILABLE: "{vendor} service is temporarily unavailable.",
    FailureReason.NETWORK_ERROR: "Failed to connect to {vendor}. Please check your connection.",
    FailureReason.SOFT_FAILURE: "{vendor} returned an error message instead of an answer.",
    FailureReason.CONTENT_POLICY: "Your request was rejected by {vendor} content policy.",
    FailureReason.CONTEXT_LENGTH: "Message too long for the {vendor} model context.",
    FailureReason.UNKNOWN: "An unexpected {vendor} error occurred.",
}

STREAM_TIMEOUT_MESSAGE = "The AI response stalled and was stopped. Please try again."

_STATUS_PATTERNS = (
    re.compile(r"(?:api\s*)?error:\s*(\d{3})", re.IGNORECASE),
    re.compile(r"status[:\s]+(\d{3})", re.IGNORECASE),
    re.compile(r"\b([45]\d{2})\b"),
)


@dataclass(frozen=True)
class ClassifiedError:
    """A provider failure mapped onto the error taxonomy.

    ``should_fallback`` alone decides whether the next provider is tried.
    ``retryable`` means the same provider may succeed if retried later; it does
    not control fallback.
    """
    error_type: ErrorCode
    should_fallback: bool
    user_message: str
    retryable: bool
    reason: FailureReason = FailureReason.UNKNOWN
    provider: str = ""
    status_code: int | None = None
    dashboard_url: str | None = None

    def to_dict(self) -> dict:
        return {
            "errorType": self.error_type.value,
            "reason": self.reason.value,
            "provider": self.provider,
            "shouldFallback": self.should_fallback,
            "retryable": self.retryable,
            "message": self.user_message,
            "statusCode": self.status_code,
            "dashboardUrl": self.dashboard_url,
        }


def extract_status_code(message: str | None) -> int | None:
    """Pull an HTTP status out of an error message like ``API error: 429``."""
    if not message:
        return None
    for pattern in _STATUS_PATTERNS:
        match = pattern.search(message)
        if match:
            return int(match.group(1))
    return None


def sanitize_error_message(message: str | None) -> str:
    """Mask secrets and truncate a provider error for logs and attempt records."""
    return sanitize_log_message(message or "", max_length=100)


def _has(text: str, *needles: str) -> bool:
    return any(needle in text for needle in needles)


def _reason_for_status(provider: str, status: int, text: str) -> FailureReason | None:
    if status in (401, 403):
        if provider == "anthropic" and _has(text, "invalid_scope", "invalid scope", "permission"):
            return FailureReason.AUTH_ERROR
        if _has(text, "invalid_api_key", "invalid api key", "api key not valid") or (
            "invalid" in text and "key" in text
        ):
            return FailureReason.INVALID_KEY
        return FailureReason.AUTH_ERROR
    if status == 429:
        if _has(text, "insufficient_quota", "exceeded your current quota", "billing_quota_exceeded",
                "quota", "resource_exhausted", "credit"):
            return FailureReason.INSUFFICIENT_QUOTA
        return FailureReason.RATE_LIMIT
    if status in (400, 413, 422):
        if _has(text, "credit balance", "billing", "payment"):
            return FailureReason.BILLING_REQUIRED
        if _has(text, "api key not valid", "api_key_invalid"):
            return FailureReason.INVALID_KEY
        if _has(text, "context_length", "context length", "too long", "maximum context", "too many tokens",
                "token limit"):
            return FailureReason.CONTEXT_LENGTH
        if _has(text, "content_policy", "content policy", "safety", "blocked"):
            return FailureReason.CONTENT_POLICY
        if provider == "google" and "quota" in text:
            return FailureReason.INSUFFICIENT_QUOTA
        return None
    if status == 404:
        return FailureReason.MODEL_NOT_FOUND
    if status >= 500:
        return FailureReason.SERVICE_UNAVAILABLE
    return None


def _reason_from_message(text: str) -> FailureReason:
    if _has(text, "credit balance", "billing", "payment"):
        return FailureReason.BILLING_REQUIRED
    if _has(text, "quota", "insufficient"):
        return FailureReason.INSUFFICIENT_QUOTA
    if _has(text, "invalid api key", "invalid_api_key", "api key not valid", "key_missing", "no api key"):
        return FailureReason.INVALID_KEY
    if _has(text, "unauthorized", "authentication", "permission"):
        return FailureReason.AUTH_ERROR
    if _has(text, "rate limit", "rate_limit", "too many requests"):
        return FailureReason.RATE_LIMIT
    if _has(text, "timeout", "timed out", "etimedout"):
        return FailureReason.TIMEOUT
    if _has(text, "network", "econnrefused", "enotfound", "connection", "fetch failed"):
        return FailureReason.NETWORK_ERROR
    if _has(text, "overloaded", "unavailable", "capacity"):
        return FailureReason.SERVICE_UNAVAILABLE
    if _has(text, "not_found", "does not exist", "model not found"):
        return FailureReason.MODEL_NOT_FOUND
    return FailureReason.UNKNOWN


def _refine_reason(failure: ProviderFailure) -> FailureReason:
    text = (failure.message or "").lower()
    if failure.kind == "decrypt":
        return FailureReason.KEY_DECRYPT_FAILED
    if failure.kind == "soft_failure":
        return FailureReason.SOFT_FAILURE
    if failure.kind in ("timeout", "stream_timeout"):
        return FailureReason.TIMEOUT
    if failure.kind == "network":
        return FailureReason.NETWORK_ERROR
    if failure.kind == "invalid_request":
        if _has(text, "content_policy", "content policy", "safety", "blocked"):
            return FailureReason.CONTENT_POLICY
        return FailureReason.CONTEXT_LENGTH

    status = failure.status_code or extract_status_code(failure.message)
    if status is not None:
        reason = _reason_for_status(failure.provider, status, text)
        if reason is not None:
            return reason
    return _reason_from_message(text)


def _dashboard_url(provider: str, reason: FailureReason) -> str | None:
    urls = PROVIDER_DASHBOARD_URLS.get(provider, {})
    if reason in (FailureReason.BILLING_REQUIRED, FailureReason.INSUFFICIENT_QUOTA):
        return urls.get("billing")
    if reason in (FailureReason.INVALID_KEY, FailureReason.AUTH_ERROR):
        return urls.get("api_keys")
    if reason == FailureReason.MODEL_NOT_FOUND:
        return urls.get("models")
    return None


def classify_failure(failure: ProviderFailure) -> ClassifiedError:
    """Classify a provider failure.
    
    Args:
        failure: Closed failure shape from a provider wrapper
        
    Returns:
        ClassifiedError with the taxonomy code and whether to try the next provider
    """
    reason = _refine_reason(failure)
    vendor = VENDOR_NAMES.get(failure.provider, failure.provider or "AI provider")
    status = failure.status_code or extract_status_code(failure.message)

    if failure.kind == "stream_timeout":
        # The live stream already reached the client; another provider cannot take over
        return ClassifiedError(
            error_type=ErrorCode.STREAM_TIMEOUT,
            should_fallback=False,
            user_message=STREAM_TIMEOUT_MESSAGE,
            retryable=True,
            reason=reason,
            provider=failure.provider,
            status_code=status,
        )

    error_type, should_fallback, retryable = _REASON_RULES[reason]
    if failure.kind == "invalid_request":
        error_type, should_fallback, retryable = ErrorCode.INVALID_REQUEST, False, False

    return ClassifiedError(
        error_type=error_type,
        should_fallback=should_fallback,
        user_message=_MESSAGES[reason].format(vendor=vendor),
        retryable=retryable,
        reason=reason,
        provider=failure.provider,
        status_code=status,
        dashboard_url=_dashboard_url(failure.provider, reason),
    )


def failure_from_exception(error: BaseException, provider: str = "", http_status: int | None = None) -> ProviderFailure:
    """Convert an arbitrary exception into the closed failure shape."""
    message = str(error) or error.__class__.__name__
    if isinstance(error, CredentialDecryptError):
        return ProviderFailure(provider, "decrypt", message)
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ProviderFailure(provider, "timeout", message or "Request timed out")
    if isinstance(error, httpx.TransportError):
        return ProviderFailure(provider, "network", message)
    if isinstance(error, httpx.HTTPStatusError):
        return ProviderFailure(provider, "http", message, error.response.status_code)
    status = http_status or extract_status_code(message)
    return ProviderFailure(provider, "http" if status else "unknown", message, status)


def classify(error: BaseException, http_status: int | None = None, provider: str = "") -> ClassifiedError:
    """Classify an exception raised outside a provider wrapper."""
    return classify_failure(failure_from_exception(error, provider, http_status))


_SUMMARY_HINTS: dict[FailureReason, str] = {
    FailureReason.BILLING_REQUIRED: "Please check your API billing status in Settings → AI Providers.",
    FailureReason.INSUFFICIENT_QUOTA: "Please check your API billing status in Settings → AI Providers.",
    FailureReason.INVALID_KEY: "Please verify your API keys in Settings → AI Providers.",
    FailureReason.AUTH_ERROR: "Please verify your API keys in Settings → AI Providers.",
    FailureReason.KEY_DECRYPT_FAILED: "Please reconnect the provider in Settings → AI Providers.",
    FailureReason.MODEL_NOT_FOUND: "The selected model may have been deprecated or renamed.",
    FailureReason.RATE_LIMIT: "Please wait a moment and try again.",
}


def most_actionable(errors: Iterable[ClassifiedError]) -> ClassifiedError | None:
    """Pick the error the user can do the most about (billing over network, etc.)."""
    ranked = sorted(errors, key=lambda e: REASON_PRIORITY.index(e.reason))
    return ranked[0] if ranked else None


def summarize_failures(errors: list[ClassifiedError], provider_labels: list[str]) -> tuple[ClassifiedError | None, str]:
    """Build one user-facing message for an exhausted fallback chain.
    
    Args:
        errors: Classified failure of every attempt, in attempt order
        provider_labels: Display names of the providers that were attempted
        
    Returns:
        The most actionable classification (or None) and the aggregated message
    """
    top = most_actionable(errors)
    labels = ", ".join(dict.fromkeys(provider_labels)) or "no providers"
    if top is None:
        return None, "AI providers temporarily unavailable. Please try again."

    hint = _SUMMARY_HINTS.get(top.reason)
    if hint is None:
        return top, f"AI providers temporarily unavailable ({labels}). {top.user_message} Please try again."
    return top, f"AI request failed ({labels}): {top.user_message} {hint}"
