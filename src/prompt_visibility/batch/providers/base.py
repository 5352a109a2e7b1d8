"""Provider client contract and the shared retry policy."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from prompt_visibility.batch.errors import ProviderCallError, RetryBudgetExhaustedError
from prompt_visibility.batch.models import RETRYABLE_FAILURE_CLASSES

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProviderResponse:
    """Text answer of one provider call with usage counters."""

    text: str
    model: str
    token_in: int = 0
    token_out: int = 0
    raw: dict[str, Any] = field(default_factory=dict)


class ProviderClient(Protocol):
    name: str

    def complete(self, prompt_text: str, *, timeout: float | None = None) -> ProviderResponse:
        """Return the provider answer or raise ``ProviderCallError``.

        ``timeout`` caps this one call below the client default.
        """
        ...


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_seconds: float = 1.0
    max_seconds: float = 8.0

    def delay(self, *, retry_number: int, rng: random.Random) -> float:
        """Full-jitter exponential backoff."""

        max_delay = min(self.max_seconds, self.base_seconds * (2 ** max(retry_number - 1, 0)))
        return rng.uniform(0, max_delay)


def call_with_retries(  # noqa: PLR0913
    client: ProviderClient,
    prompt_text: str,
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
    deadline: float | None = None,
    clock: Callable[[], float] = time.monotonic,
    attempt_timeout: float | None = None,
) -> tuple[ProviderResponse, int]:
    """Call ``client`` until success, a non-retryable failure or attempts run out.

    Returns the response together with the number of attempts used. The last
    ``ProviderCallError`` propagates with its ``attempts`` attribute set.

    With a ``deadline`` (in ``clock`` units) each call's timeout is capped to
    the time left, and a retry whose backoff plus ``attempt_timeout`` would
    end past the deadline is not started: ``RetryBudgetExhaustedError`` is
    raised instead so the caller can hand the task back to the queue.
    """

    rng = rng or random.Random()  # noqa: S311
    attempt = 0
    while True:
        timeout = attempt_timeout
        if deadline is not None:
            remaining = deadline - clock()
            if remaining <= 0:
                raise RetryBudgetExhaustedError(client.name, attempts=attempt)
            timeout = remaining if timeout is None else min(timeout, remaining)
        attempt += 1
        try:
            return client.complete(prompt_text, timeout=timeout), attempt
        except ProviderCallError as error:
            error.attempts = attempt
            retryable = error.failure_class in RETRYABLE_FAILURE_CLASSES
            if not retryable or attempt >= policy.max_attempts:
                logger.warning(
                    "Provider %s failed after %d attempt(s): %s (%s)",
                    client.name,
                    attempt,
                    error,
                    error.failure_class.value,
                )
                raise
            delay = policy.delay(retry_number=attempt, rng=rng)
            if deadline is not None and clock() + delay + (attempt_timeout or 0.0) > deadline:
                logger.info(
                    "Provider %s: no time left for attempt %d after %s",
                    client.name,
                    attempt + 1,
                    error.failure_class.value,
                )
                raise RetryBudgetExhaustedError(client.name, attempts=attempt) from error
            logger.info(
                "Retrying provider %s in %.2fs after %s (attempt %d/%d)",
                client.name,
                delay,
                error.failure_class.value,
                attempt,
                policy.max_attempts,
            )
            sleep(delay)
