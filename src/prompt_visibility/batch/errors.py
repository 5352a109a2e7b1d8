"""Typed errors raised by batch fan-out, job store and provider calls."""

from __future__ import annotations

from prompt_visibility.batch.models import BatchJobStatus, FailureClass


class BatchError(Exception):
    """Base class for batch subsystem errors."""

    action = "error"


class ValidationError(BatchError, ValueError):
    """Request is malformed or refers to unknown entities."""

    action = "validation_error"


class NoActivePromptsError(ValidationError):
    def __init__(self, org_id: str) -> None:
        super().__init__(f"No active prompts found for org {org_id}.")
        self.org_id = org_id


class LiveJobExistsError(ValidationError):
    """Another pending/processing job already holds the org's live slot."""

    def __init__(self, org_id: str) -> None:
        super().__init__(f"Org {org_id} already has a pending or processing job.")
        self.org_id = org_id


class ConfigurationError(BatchError):
    """Runtime configuration prevents the operation (keys, entitlements)."""

    action = "configuration_missing"


class NoEntitledProvidersError(ConfigurationError):
    def __init__(self, org_id: str, tier: str) -> None:
        super().__init__(
            f"No enabled and configured providers entitled for org {org_id} (tier={tier}).",
        )
        self.org_id = org_id
        self.tier = tier


class JobNotFoundError(BatchError, LookupError):
    action = "not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(BatchError, RuntimeError):
    def __init__(self, current: BatchJobStatus, event: str) -> None:
        super().__init__(f"Job cannot handle event {event!r} from status={current.value}.")
        self.current = current
        self.event = event


class ProviderCallError(BatchError):
    """One provider call failed; classified for the retry policy."""

    def __init__(
        self,
        message: str,
        *,
        failure_class: FailureClass,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.failure_class = failure_class
        self.status_code = status_code
        self.attempts = 1


class RetryBudgetExhaustedError(BatchError):
    """The invocation deadline leaves no room for another provider attempt."""

    def __init__(self, provider: str, *, attempts: int) -> None:
        super().__init__(
            f"Time budget exhausted for provider {provider} after {attempts} attempt(s).",
        )
        self.provider = provider
        self.attempts = attempts
