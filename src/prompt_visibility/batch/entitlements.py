"""Subscription tier entitlements: which providers and how many prompts."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PlanTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"


KNOWN_PROVIDERS: tuple[str, ...] = ("openai", "perplexity", "gemini", "google_ai_overview")


@dataclass(frozen=True, slots=True)
class OrganizationEntitlement:
    """Derived from the tier, never stored."""

    tier: PlanTier
    providers: tuple[str, ...]
    prompt_limit: int

    def allows(self, provider: str) -> bool:
        return provider in self.providers


_ENTITLEMENTS: dict[PlanTier, OrganizationEntitlement] = {
    PlanTier.FREE: OrganizationEntitlement(
        tier=PlanTier.FREE,
        providers=("openai",),
        prompt_limit=5,
    ),
    PlanTier.STARTER: OrganizationEntitlement(
        tier=PlanTier.STARTER,
        providers=("openai", "perplexity"),
        prompt_limit=25,
    ),
    PlanTier.GROWTH: OrganizationEntitlement(
        tier=PlanTier.GROWTH,
        providers=KNOWN_PROVIDERS,
        prompt_limit=100,
    ),
    PlanTier.PRO: OrganizationEntitlement(
        tier=PlanTier.PRO,
        providers=KNOWN_PROVIDERS,
        prompt_limit=300,
    ),
}


def parse_tier(value: str | None) -> PlanTier:
    """Normalize a stored tier name; unknown or empty values fall back to free."""

    normalized = (value or "").strip().lower()
    try:
        return PlanTier(normalized)
    except ValueError:
        return PlanTier.FREE


def entitlement_for(tier: str | PlanTier | None) -> OrganizationEntitlement:
    if isinstance(tier, PlanTier):
        return _ENTITLEMENTS[tier]
    return _ENTITLEMENTS[parse_tier(tier)]


def filter_entitled_providers(
    *,
    tier: str | PlanTier | None,
    enabled: list[str],
    configured: tuple[str, ...],
) -> list[str]:
    """Providers that are enabled, credentialed and entitled, in canonical order."""

    entitlement = entitlement_for(tier)
    enabled_set = set(enabled)
    configured_set = set(configured)
    return [
        provider
        for provider in KNOWN_PROVIDERS
        if provider in enabled_set and provider in configured_set and entitlement.allows(provider)
    ]
