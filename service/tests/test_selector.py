"""Tests for task inference and provider ordering."""

import random

import pytest

from airelay.services.llm.selector import (
    MODEL_TIERS,
    TaskCategory,
    affinity_score,
    get_model_tier,
    infer_task_category,
    normalize_task_category,
    select_best,
    select_order,
)

from conftest import make_config

PROVIDER_TYPES = ("openai", "anthropic", "google")
MODELS = tuple(MODEL_TIERS) + ("unknown-model", "")


class TestSelectOrder:

    @pytest.mark.parametrize("task", list(TaskCategory))
    def test_sorted_by_score_then_creation_time(self, task):
        rng = random.Random(f"order-{task.value}")
        for _ in range(50):
            providers = [
                make_config(rng.choice(PROVIDER_TYPES), rng.choice(MODELS), minutes=rng.randint(0, 20), config_id=str(i))
                for i in range(rng.randint(0, 6))
            ]
            ordered = select_order(providers, task)

            assert sorted(ordered, key=lambda p: p.id) == sorted(providers, key=lambda p: p.id)
            for current, following in zip(ordered, ordered[1:]):
                current_score = affinity_score(current, task)
                following_score = affinity_score(following, task)
                assert current_score >= following_score
                if current_score == following_score:
                    assert current.created_at <= following.created_at

    def test_coaching_prefers_anthropic_among_remaining(self):
        """openai was revoked; anthropic leads, google follows."""
        anthropic = make_config("anthropic", "claude-sonnet-4-5-20250929", minutes=3)
        google = make_config("google", "gemini-2.5-pro", minutes=1)

        ordered = select_order([google, anthropic], "coaching")

        assert [p.provider_type for p in ordered] == ["anthropic", "google"]

    def test_ties_break_on_creation_time(self):
        newer = make_config("openai", "gpt-4o", minutes=10, config_id="newer")
        older = make_config("openai", "gpt-4o", minutes=1, config_id="older")
        assert [p.id for p in select_order([newer, older], TaskCategory.GENERAL)] == ["older", "newer"]

    def test_preferred_provider_moves_to_front(self):
        openai = make_config("openai", "gpt-5")
        google = make_config("google", "gemini-2.5-flash-lite")
        ordered = select_order([openai, google], "general", preferred_provider="google")
        assert [p.provider_type for p in ordered] == ["google", "openai"]

    def test_absent_preferred_provider_is_ignored(self):
        openai = make_config("openai", "gpt-5")
        google = make_config("google", "gemini-2.5-flash")
        ordered = select_order([google, openai], "general", preferred_provider="anthropic")
        assert [p.provider_type for p in ordered] == ["openai", "google"]

    def test_empty_list(self):
        assert select_order([], "coaching") == []
        assert select_best([], "coaching") is None

    def test_select_best_returns_head(self):
        providers = [make_config("google", "gemini-2.5-flash"), make_config("anthropic", "claude-sonnet-4-5-20250929")]
        assert select_best(providers, "coaching") == select_order(providers, "coaching")[0]


class TestScoring:

    def test_score_formula(self):
        config = make_config("anthropic", "claude-sonnet-4-5-20250929")
        # tier 3, coaching affinity 5
        assert affinity_score(config, TaskCategory.COACHING) == 35

    def test_unknown_model_and_provider_score_zero(self):
        assert get_model_tier("mystery-1") == 0
        assert affinity_score(make_config("mistral", "mystery-1"), "general") == 0

    @pytest.mark.parametrize("value,expected", [
        ("coaching", TaskCategory.COACHING),
        ("plan_my_day", TaskCategory.PLANNING),
        ("CHART", TaskCategory.CHART_INSIGHT),
        ("nonsense", TaskCategory.DEFAULT),
        (None, TaskCategory.DEFAULT),
    ])
    def test_normalize_task_category(self, value, expected):
        assert normalize_task_category(value) == expected


class TestInferTaskCategory:

    @pytest.mark.parametrize("quick_action,expected", [
        ("weekly_trends", TaskCategory.CHART_INSIGHT),
        ("plan_my_day", TaskCategory.PLANNING),
        ("deal_doctor", TaskCategory.COACHING),
    ])
    def test_quick_actions(self, quick_action, expected):
        assert infer_task_category("anything", quick_action) == expected

    @pytest.mark.parametrize("message,expected", [
        ("Make me a slide for the board", TaskCategory.IMAGE_SUITABLE),
        ("Show the revenue trend", TaskCategory.CHART_INSIGHT),
        ("What should I focus on today?", TaskCategory.PLANNING),
        ("How do I handle this objection?", TaskCategory.COACHING),
        ("Analyze the Acme account", TaskCategory.TEXT_ANALYSIS),
        ("Hello there", TaskCategory.GENERAL),
    ])
    def test_keywords(self, message, expected):
        assert infer_task_category(message) == expected
