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

"""Order a tenant's providers for a task.

score = tier(model) * 10 + affinity[task][provider_type]

Both tables are static configuration and must be edited together when a
model or vendor is added. Unknown models and providers score 0 so they sort
last instead of failing.
"""
from enum import Enum
from typing import Sequence

from airelay.services.llm.provider_registry import ProviderConfig


class TaskCategory(str, Enum):
    CHART_INSIGHT = "chart_insight"
    COACHING = "coaching"
    TEXT_ANALYSIS = "text_analysis"
    IMAGE_SUITABLE = "image_suitable"
    PLANNING = "planning"
    GENERAL = "general"
    DEFAULT = "default"


TASK_MODEL_AFFINITY: dict[TaskCategory, dict[str, int]] = {
    TaskCategory.COACHING: {"anthropic": 5, "openai": 3, "google": 2},
    TaskCategory.PLANNING: {"openai": 5, "anthropic": 4, "google": 2},
    TaskCategory.CHART_INSIGHT: {"openai": 4, "google": 3, "anthropic": 2},
    TaskCategory.TEXT_ANALYSIS: {"openai": 4, "anthropic": 3, "google": 2},
    TaskCategory.IMAGE_SUITABLE: {"google": 5, "openai": 3, "anthropic": 2},
    TaskCategory.GENERAL: {"openai": 4, "anthropic": 3, "google": 2},
    TaskCategory.DEFAULT: {"openai": 3, "anthropic": 3, "google": 2},
}

MODEL_TIERS: dict[str, int] = {
    # OpenAI
    "gpt-5": 3,
    "gpt-5-mini": 2,
    "gpt-4.1": 2,
    "gpt-4.1-mini": 1,
    "gpt-4o": 2,
    "gpt-4o-mini": 1,
    "gpt-4-turbo": 2,
    # Anthropic
    "claude-sonnet-4-5-20250929": 3,
    "claude-opus-4-1-20250805": 3,
    "claude-sonnet-3-7-20250219": 2,
    "claude-haiku-4-5-20251001": 1,
    "claude-3-5-sonnet-20241022": 2,
    # Google
    "gemini-2.5-pro": 3,
    "gemini-2.5-flash": 2,
    "gemini-2.5-flash-lite": 1,
    "gemini-1.5-pro": 2,
}

TASK_ALIASES = {
    "plan_my_day": TaskCategory.PLANNING,
    "chart": TaskCategory.CHART_INSIGHT,
    "image": TaskCategory.IMAGE_SUITABLE,
    "analysis": TaskCategory.TEXT_ANALYSIS,
}

CHART_QUICK_ACTIONS = frozenset({
    "weekly_trends", "pipeline_flow", "at_risk", "revenue_forecast", "goal_progress",
    "velocity_booster", "icp_analyzer", "momentum_insights", "flow_forecast",
})
COACHING_QUICK_ACTIONS = frozenset({"deal_doctor", "qualifier_coach", "retention_master"})

# First matching group wins, in this order
_KEYWORD_GROUPS: tuple[tuple[TaskCategory, tuple[str, ...]], ...] = (
    (TaskCategory.IMAGE_SUITABLE, (
        "image", "graphic", "slide", "deck", "presentation", "visual summary",
        "infographic", "diagram", "picture",
    )),
    (TaskCategory.CHART_INSIGHT, (
        "chart", "graph", "trend", "forecast", "pipeline flow", "velocity", "at risk",
        "goal progress", "weekly", "monthly", "distribution", "breakdown", "metrics",
        "analytics", "icp",
    )),
    (TaskCategory.PLANNING, (
        "plan my day", "daily action", "today", "priorities", "what should i",
        "schedule", "agenda", "tasks for",
    )),
    (TaskCategory.COACHING, (
        "coach", "teach", "help me", "improve", "how do i", "strategy", "qualification",
        "discovery", "negotiate", "close", "objection", "stuck deal", "stalled",
        "blocked", "advice", "tips", "best practice",
    )),
    (TaskCategory.TEXT_ANALYSIS, (
        "analyze", "analysis", "review", "assess", "evaluate", "summary", "insight",
        "pipeline", "deals",
    )),
)


def normalize_task_category(value: str | TaskCategory | None) -> TaskCategory:
    """Map a task name or alias onto a TaskCategory; unknown names become DEFAULT."""
    if isinstance(value, TaskCategory):
        return value
    key = (value or "").strip().lower()
    if key in TASK_ALIASES:
        return TASK_ALIASES[key]
    try:
        return TaskCategory(key)
    except ValueError:
        return TaskCategory.DEFAULT


def infer_task_category(message: str, quick_action_id: str | None = None) -> TaskCategory:
    """Derive the task category from a quick action or the message text."""
    if quick_action_id:
        if quick_action_id in CHART_QUICK_ACTIONS:
            return TaskCategory.CHART_INSIGHT
        if quick_action_id == "plan_my_day":
            return TaskCategory.PLANNING
        if quick_action_id in COACHING_QUICK_ACTIONS:
            return TaskCategory.COACHING

    text = (message or "").lower()
    for category, keywords in _KEYWORD_GROUPS:
        if any(keyword in text for keyword in keywords):
            return category
    return TaskCategory.GENERAL


def get_model_tier(model: str | None) -> int:
    return MODEL_TIERS.get(model or "", 0)


def get_affinity(task: TaskCategory, provider_type: str) -> int:
    return TASK_MODEL_AFFINITY.get(task, {}).get(provider_type, 0)


def affinity_score(provider: ProviderConfig, task: str | TaskCategory) -> int:
    task = normalize_task_category(task)
    return get_model_tier(provider.model) * 10 + get_affinity(task, provider.provider_type)


def select_order(
    providers: Sequence[ProviderConfig],
    task: str | TaskCategory,
    preferred_provider: str | None = None,
) -> list[ProviderConfig]:
    """Order providers by descending score, oldest connection first on ties.
    
    Args:
        providers: Candidate providers
        task: Task category (aliases accepted)
        preferred_provider: Provider type the caller asked for; moved to the
            front when present, ignored otherwise
            
    Returns:
        New list in attempt order
    """
    task = normalize_task_category(task)
    ordered = sorted(providers, key=lambda p: (-affinity_score(p, task), p.created_at))
    if preferred_provider:
        preferred = select_best([p for p in ordered if p.provider_type == preferred_provider], task)
        if preferred is not None:
            ordered.remove(preferred)
            ordered.insert(0, preferred)
    return ordered


def select_best(providers: Sequence[ProviderConfig], task: str | TaskCategory) -> ProviderConfig | None:
    """Return the single best provider for the task, or None if there are none."""
    if not providers:
        return None
    task = normalize_task_category(task)
    return min(providers, key=lambda p: (-affinity_score(p, task), p.created_at))
