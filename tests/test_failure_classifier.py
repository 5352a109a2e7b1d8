from __future__ import annotations

import allure
import pytest

from prompt_visibility.batch.failure_classifier import classify_provider_failure
from prompt_visibility.batch.models import RETRYABLE_FAILURE_CLASSES, FailureClass

pytestmark = [
    allure.epic("Batch Execution"),
    allure.feature("Provider Failures & Retries"),
]


def test_quota_message_beats_rate_limit_status() -> None:
    classified = classify_provider_failure(
        provider="openai",
        status_code=429,
        message='{"error": {"code": "insufficient_quota"}}',
    )
    assert classified.failure_class == FailureClass.BILLING_OR_QUOTA
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "insufficient_quota"
    assert classified.failure_class not in RETRYABLE_FAILURE_CLASSES


def test_bare_429_is_transient_rate_limit() -> None:
    classified = classify_provider_failure(provider="perplexity", status_code=429, message="")
    assert classified.failure_class == FailureClass.BACKEND_TRANSIENT
    assert classified.matched_rule == "rate_limit_transient"
    assert classified.reason_code == "perplexity_rate_limit_transient"


@pytest.mark.parametrize("status_code", [401, 403])
def test_auth_status_codes(status_code: int) -> None:
    classified = classify_provider_failure(provider="gemini", status_code=status_code, message="")
    assert classified.failure_class == FailureClass.ACCESS_OR_AUTH


def test_model_not_available_from_message() -> None:
    classified = classify_provider_failure(
        provider="openai",
        status_code=400,
        message="The model `gpt-9` does not exist",
    )
    assert classified.failure_class == FailureClass.MODEL_NOT_AVAILABLE
    assert classified.matched_pattern == "does not exist"


def test_timeout_pattern_maps_to_timeout_class() -> None:
    classified = classify_provider_failure(
        provider="openai",
        status_code=None,
        message="upstream request timed out",
    )
    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.matched_rule == "generic_transient"


def test_server_errors_are_transient_by_status() -> None:
    classified = classify_provider_failure(
        provider="openai",
        status_code=503,
        message="Service Unavailable",
    )
    assert classified.failure_class == FailureClass.BACKEND_TRANSIENT
    assert classified.matched_rule == "transient_status_code"


def test_other_client_errors_are_bad_requests() -> None:
    classified = classify_provider_failure(
        provider="openai",
        status_code=422,
        message="messages must not be empty",
    )
    assert classified.failure_class == FailureClass.BAD_REQUEST


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_provider_failure(provider="openai", status_code=None, message="???")
    assert classified.failure_class == FailureClass.BACKEND_NON_RETRYABLE
    assert classified.reason_code == "openai_backend_non_retryable"
    assert classified.matched_rule == "fallback_non_retryable"
    assert classified.matched_pattern is None
