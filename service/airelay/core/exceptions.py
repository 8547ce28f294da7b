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

"""Standardized exception classes for consistent error responses."""
from fastapi import HTTPException, status


class APIError(HTTPException):
    """Base exception for API errors with standardized response format."""
    
    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: dict | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(
            status_code=status_code,
            detail={
                "code": code,
                "message": message,
                "details": self.details
            },
            headers=headers,
        )


class RateLimitExceededError(APIError):
    """Admission-time rate limit rejection, raised before any provider is contacted."""
    
    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: int | None = None,
        limit: int | None = None,
        remaining: int = 0,
        reset_at: float | None = None,
        details: dict | None = None,
    ):
        error_details = details or {}
        headers: dict[str, str] = {}
        if retry_after is not None:
            error_details["retry_after"] = retry_after
            headers["Retry-After"] = str(retry_after)
        if limit is not None:
            error_details["limit"] = limit
            headers["X-RateLimit-Limit"] = str(limit)
            headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        if reset_at:
            error_details["reset_at"] = reset_at
            headers["X-RateLimit-Reset"] = str(int(reset_at))
        self.retry_after = retry_after
        super().__init__(
            code="RATE_LIMIT_EXCEEDED",
            message=message,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details=error_details,
            headers=headers or None,
        )


class AILimitReachedError(APIError):
    """Monthly AI request quota for the organization's plan is used up."""

    def __init__(self, used: int, limit: int, plan: str):
        super().__init__(
            code="AI_LIMIT_REACHED",
            message=(
                f"Your organization has used all {limit} AI requests included in the "
                f"{plan} plan this month. Upgrade your plan or wait for the next billing cycle."
            ),
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"used": used, "limit": limit, "plan": plan},
        )


class InvalidRequestError(APIError):
    """The request itself cannot be served by any provider."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(
            code="INVALID_REQUEST",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details or {},
        )


class NoProvidersError(APIError):
    """Tenant has no AI provider connected."""

    def __init__(self, message: str | None = None):
        super().__init__(
            code="NO_PROVIDERS",
            message=message or "No AI provider is connected. Add an API key in Settings → AI Providers.",
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class ProviderFetchError(APIError):
    """Provider configuration could not be loaded from storage."""

    def __init__(self, message: str | None = None):
        super().__init__(
            code="PROVIDER_FETCH_ERROR",
            message=message or "Unable to load your AI provider settings right now. Please try again.",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class AllProvidersFailedError(APIError):
    """Every candidate provider failed for this request."""

    def __init__(
        self,
        message: str,
        error_type: str,
        providers_attempted: list[str],
        attempts: list[dict] | None = None,
        dashboard_url: str | None = None,
    ):
        self.error_type = error_type
        self.providers_attempted = providers_attempted
        self.attempts = attempts or []
        details = {
            "errorType": error_type,
            "providersAttempted": providers_attempted,
            "attempts": self.attempts,
        }
        if dashboard_url:
            details["dashboardUrl"] = dashboard_url
        super().__init__(
            code="ALL_PROVIDERS_FAILED",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )
