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

"""Request dependencies: tenant identity and the shared relay engine.

Authentication happens at the gateway in front of this service, which forwards
the caller's identity in ``X-User-Id``, ``X-Organization-Id`` and ``X-Plan``.
"""
import logging

from fastapi import Header, Request

from airelay.core.config import get_settings
from airelay.core.exceptions import APIError
from airelay.core.plans import normalize_plan
from airelay.services.llm.engine import AIRelayEngine, TenantContext

logger = logging.getLogger(__name__)


async def get_tenant(
    x_user_id: str | None = Header(default=None),
    x_organization_id: str | None = Header(default=None),
    x_plan: str | None = Header(default=None),
) -> TenantContext:
    if not x_user_id or not x_organization_id:
        logger.warning("[get_tenant] Missing tenant headers")
        raise APIError(
            code="UNAUTHORIZED",
            message="Missing user or organization identity",
            status_code=401,
        )
    return TenantContext(
        user_id=x_user_id.strip(),
        organization_id=x_organization_id.strip(),
        plan=normalize_plan(x_plan or get_settings().default_plan),
    )


def get_relay_engine(request: Request) -> AIRelayEngine:
    return request.app.state.relay_engine
