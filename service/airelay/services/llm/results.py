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

"""Value types passed between provider wrappers, the relay and the orchestrator."""
from dataclasses import dataclass
from typing import Literal

ProviderKind = Literal["openai", "anthropic", "google"]

FailureKind = Literal[
    "http",             # vendor answered with an error status
    "network",          # connection refused, DNS, reset
    "timeout",          # whole provider call exceeded its deadline
    "stream_timeout",   # a single stream read exceeded the watchdog
    "invalid_request",  # the request itself is unusable
    "decrypt",          # stored credential could not be decrypted
    "soft_failure",     # 2xx response whose text is an apology or error
    "unknown",
]


@dataclass(frozen=True)
class ProviderFailure:
    """Closed error shape produced by every provider wrapper."""
    provider: str
    kind: FailureKind
    message: str = ""
    status_code: int | None = None


@dataclass
class CallResult:
    """Either the response text or the failure, never both."""
    text: str | None = None
    failure: ProviderFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, text: str) -> "CallResult":
        return cls(text=text)

    @classmethod
    def error(cls, failure: ProviderFailure) -> "CallResult":
        return cls(failure=failure)
