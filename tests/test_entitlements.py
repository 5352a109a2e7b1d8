from __future__ import annotations

import allure

from prompt_visibility.batch.entitlements import (
    PlanTier,
    entitlement_for,
    filter_entitled_providers,
    parse_tier,
)

pytestmark = [
    allure.epic("Batch Fan-out"),
    allure.feature("Entitlements"),
]


def test_unknown_tier_falls_back_to_free() -> None:
    assert parse_tier("Enterprise") == PlanTier.FREE
    assert parse_tier(None) == PlanTier.FREE
    assert parse_tier(" Growth ") == PlanTier.GROWTH


def test_tier_limits() -> None:
    assert entitlement_for("free").prompt_limit == 5
    assert entitlement_for("starter").providers == ("openai", "perplexity")
    assert entitlement_for(PlanTier.PRO).prompt_limit == 300


def test_filter_requires_enabled_configured_and_entitled() -> None:
    providers = filter_entitled_providers(
        tier="growth",
        enabled=["google_ai_overview", "gemini", "openai"],
        configured=("openai", "perplexity", "google_ai_overview"),
    )
    assert providers == ["openai", "google_ai_overview"]


def test_free_tier_ignores_extra_providers() -> None:
    providers = filter_entitled_providers(
        tier="free",
        enabled=["openai", "perplexity", "gemini"],
        configured=("openai", "perplexity", "gemini"),
    )
    assert providers == ["openai"]
