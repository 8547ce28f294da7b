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

"""Subscription plan quotas used by admission control."""
from dataclasses import dataclass

UNLIMITED = -1


@dataclass(frozen=True)
class PlanQuotas:
    """Per-plan AI limits. ``UNLIMITED`` disables a monthly limit."""
    monthly_ai_requests: int
    ai_generic_per_minute: int
    ai_generic_per_hour: int
    ai_generic_per_day: int
    ai_insights_per_hour: int
    ai_insights_per_day: int
    plan_my_day_per_user_per_day: int
    plan_my_day_per_org_per_day: int


PLAN_QUOTAS: dict[str, PlanQuotas] = {
    "free": PlanQuotas(
        monthly_ai_requests=100,
        ai_generic_per_minute=5,
        ai_generic_per_hour=30,
        ai_generic_per_day=100,
        ai_insights_per_hour=5,
        ai_insights_per_day=15,
        plan_my_day_per_user_per_day=2,
        plan_my_day_per_org_per_day=3,
    ),
    "startup": PlanQuotas(
        monthly_ai_requests=1000,
        ai_generic_per_minute=15,
        ai_generic_per_hour=100,
        ai_generic_per_day=500,
        ai_insights_per_hour=15,
        ai_insights_per_day=50,
        plan_my_day_per_user_per_day=5,
        plan_my_day_per_org_per_day=15,
    ),
    "growth": PlanQuotas(
        monthly_ai_requests=5000,
        ai_generic_per_minute=25,
        ai_generic_per_hour=200,
        ai_generic_per_day=1000,
        ai_insights_per_hour=30,
        ai_insights_per_day=100,
        plan_my_day_per_user_per_day=10,
        plan_my_day_per_org_per_day=40,
    ),
    "pro": PlanQuotas(
        monthly_ai_requests=UNLIMITED,
        ai_generic_per_minute=60,
        ai_generic_per_hour=500,
        ai_generic_per_day=3000,
        ai_insights_per_hour=60,
        ai_insights_per_day=300,
        plan_my_day_per_user_per_day=20,
        plan_my_day_per_org_per_day=100,
    ),
}

DEFAULT_PLAN = "free"


def normalize_plan(plan: str | None) -> str:
    """Map a plan id onto a known plan, defaulting to free."""
    key = (plan or "").strip().lower()
    return key if key in PLAN_QUOTAS else DEFAULT_PLAN


def get_plan_quotas(plan: str | None) -> PlanQuotas:
    return PLAN_QUOTAS[normalize_plan(plan)]


def has_unlimited_ai(plan: str | None) -> bool:
    return get_plan_quotas(plan).monthly_ai_requests == UNLIMITED
