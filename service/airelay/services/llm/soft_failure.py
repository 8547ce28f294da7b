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

"""Detect vendor apology and error text returned with a success status."""
from dataclasses import dataclass

# Lowercase substrings; matched against the complete response only
SOFT_FAILURE_PATTERNS: tuple[str, ...] = (
    # connectivity and credential problems echoed by the model
    "i'm unable to connect",
    "unable to connect to",
    "api key needs credits",
    "api key needs permissions",
    "check your api key",
    "verify your api key",
    "no credits",
    "insufficient credits",
    "permission denied",
    "not authorized",
    "invalid api key",
    "authentication failed",
    # capacity
    "rate limit exceeded",
    "quota exceeded",
    "model is currently overloaded",
    "currently experiencing high demand",
    "please try again later",
    "service temporarily unavailable",
    "server is busy",
    "capacity limit",
    # refusals
    "i'm sorry, i can't help",
    "i'm sorry, but i can't help",
    "i can't help with that",
    "i cannot help with that",
    "i'm unable to help with that",
    "i can't assist with that",
    "i cannot assist with that",
)


@dataclass(frozen=True)
class SoftFailureResult:
    is_soft_failure: bool
    matched_pattern: str | None = None


def _normalize(text: str) -> str:
    return text.replace("’", "'").replace("‘", "'").lower()


def detect_soft_failure(
    response_text: str | None,
    patterns: tuple[str, ...] = SOFT_FAILURE_PATTERNS,
) -> SoftFailureResult:
    """Scan a finished response for apology/error text.
    
    Args:
        response_text: The full accumulated response, never a partial prefix
        patterns: Lowercase substrings to look for
        
    Returns:
        SoftFailureResult with the first matching pattern, if any. An empty
        response counts as a soft failure.
    """
    if response_text is None or not response_text.strip():
        return SoftFailureResult(True, "<empty response>")

    haystack = _normalize(response_text)
    for pattern in patterns:
        if pattern in haystack:
            return SoftFailureResult(True, pattern)
    return SoftFailureResult(False)
