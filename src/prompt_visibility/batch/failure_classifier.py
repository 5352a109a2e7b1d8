"""Deterministic provider failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from prompt_visibility.batch.models import FailureClass

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "quota",
    "resource_exhausted",
    "billing",
    "payment",
    "credits",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid_api_key",
    "api key not valid",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "model_not_found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "does not exist",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "overloaded",
    "connection reset",
    "connection refused",
    "network error",
    "dns",
)

_TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None


def classify_provider_failure(
    *,
    provider: str,
    status_code: int | None,
    message: str,
) -> ProviderFailureClassification:
    """Classify one failed provider call into a deterministic retry class.

    Message patterns win over status codes so a 429 carrying an exhausted
    quota is billing (non-retryable) while a bare 429 is a transient rate limit.
    """

    haystack = message.lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None or status_code == 402:
        return ProviderFailureClassification(
            failure_class=FailureClass.BILLING_OR_QUOTA,
            reason_code=f"{provider}_billing_or_quota",
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None or status_code in {401, 403}:
        return ProviderFailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            reason_code=f"{provider}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None or status_code == 404:
        return ProviderFailureClassification(
            failure_class=FailureClass.MODEL_NOT_AVAILABLE,
            reason_code=f"{provider}_model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None or status_code == 429:
        return ProviderFailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code=f"{provider}_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or (status_code is not None and status_code in _TRANSIENT_STATUS_CODES):
        return ProviderFailureClassification(
            failure_class=(
                FailureClass.TIMEOUT
                if pattern in {"timeout", "timed out"} or status_code == 408
                else FailureClass.BACKEND_TRANSIENT
            ),
            reason_code=f"{provider}_backend_transient",
            matched_rule=(
                "transient_status_code"
                if pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    if status_code is not None and 400 <= status_code < 500:
        return ProviderFailureClassification(
            failure_class=FailureClass.BAD_REQUEST,
            reason_code=f"{provider}_bad_request",
            matched_rule="client_error_status",
            matched_pattern=None,
        )

    return ProviderFailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        reason_code=f"{provider}_backend_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
