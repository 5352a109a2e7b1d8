"""Test doubles and seeding helpers shared across test modules."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from prompt_visibility.batch.errors import ProviderCallError
from prompt_visibility.batch.models import FailureClass
from prompt_visibility.batch.providers.base import ProviderResponse
from prompt_visibility.batch.repository import BatchRepository

ALL_PROVIDERS = ("openai", "perplexity", "gemini", "google_ai_overview")


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeProviderClient:
    """Scripted provider: pops one outcome per call, then repeats ``default``."""

    name: str
    default: str | ProviderCallError = "Acme is the best choice for widgets."
    script: list[str | ProviderCallError] = field(default_factory=list)
    on_call: Callable[[str], None] | None = None
    calls: list[str] = field(default_factory=list)
    timeouts: list[float | None] = field(default_factory=list)
    closed: bool = False

    def complete(self, prompt_text: str, *, timeout: float | None = None) -> ProviderResponse:
        self.calls.append(prompt_text)
        self.timeouts.append(timeout)
        if self.on_call is not None:
            self.on_call(prompt_text)
        outcome = self.script.pop(0) if self.script else self.default
        if isinstance(outcome, ProviderCallError):
            raise outcome
        return ProviderResponse(text=outcome, model=f"{self.name}-test", token_in=7, token_out=11)

    def close(self) -> None:
        self.closed = True


def non_retryable(message: str = "bad request") -> ProviderCallError:
    return ProviderCallError(message, failure_class=FailureClass.BACKEND_NON_RETRYABLE)


def transient(message: str = "overloaded") -> ProviderCallError:
    return ProviderCallError(message, failure_class=FailureClass.BACKEND_TRANSIENT)


def seed_org(  # noqa: PLR0913
    repository: BatchRepository,
    *,
    org_id: str = "org-1",
    tier: str = "starter",
    prompts: int = 5,
    brands: list[str] | None = None,
    competitors: list[str] | None = None,
) -> list[str]:
    """Create an organization with ``prompts`` active prompts; returns prompt ids."""

    repository.upsert_organization(
        org_id=org_id,
        name="Acme",
        subscription_tier=tier,
        brand_names=brands or ["Acme"],
        competitor_names=competitors or ["Globex", "Initech"],
    )
    return [
        repository.add_prompt(
            org_id=org_id,
            text=f"Which widget vendor is best? #{index}",
            prompt_id=f"{org_id}-p{index}",
        ).prompt_id
        for index in range(prompts)
    ]
