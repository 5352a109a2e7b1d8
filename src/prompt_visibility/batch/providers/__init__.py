"""LLM provider clients used by the micro-batch executor."""

from __future__ import annotations

import httpx

from prompt_visibility.batch.providers.base import (
    ProviderClient,
    ProviderResponse,
    RetryPolicy,
    call_with_retries,
)
from prompt_visibility.batch.providers.http import (
    AiOverviewClient,
    ChatCompletionsClient,
    GeminiClient,
    HttpProviderClient,
)
from prompt_visibility.config import Settings

__all__ = [
    "AiOverviewClient",
    "ChatCompletionsClient",
    "GeminiClient",
    "HttpProviderClient",
    "ProviderClient",
    "ProviderResponse",
    "RetryPolicy",
    "build_provider_clients",
    "call_with_retries",
]


def build_provider_clients(
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, ProviderClient]:
    """Instantiate clients for every provider with credentials present."""

    providers = settings.providers
    timeout = settings.batch.request_timeout_seconds
    clients: dict[str, ProviderClient] = {}
    configured = settings.configured_providers()
    if "openai" in configured:
        clients["openai"] = ChatCompletionsClient(
            name="openai",
            api_key=providers.openai_api_key,
            base_url=providers.openai_base_url,
            model=providers.openai_model,
            timeout_seconds=timeout,
            temperature=providers.temperature,
            max_output_tokens=providers.max_output_tokens,
            transport=transport,
        )
    if "perplexity" in configured:
        clients["perplexity"] = ChatCompletionsClient(
            name="perplexity",
            api_key=providers.perplexity_api_key,
            base_url=providers.perplexity_base_url,
            model=providers.perplexity_model,
            timeout_seconds=timeout,
            temperature=providers.temperature,
            max_output_tokens=providers.max_output_tokens,
            transport=transport,
        )
    if "gemini" in configured:
        clients["gemini"] = GeminiClient(
            api_key=providers.gemini_api_key,
            base_url=providers.gemini_base_url,
            model=providers.gemini_model,
            timeout_seconds=timeout,
            temperature=providers.temperature,
            max_output_tokens=providers.max_output_tokens,
            transport=transport,
        )
    if "google_ai_overview" in configured:
        clients["google_ai_overview"] = AiOverviewClient(
            service_url=providers.ai_overview_service_url,
            service_key=providers.ai_overview_service_key,
            timeout_seconds=timeout,
            transport=transport,
        )
    return clients
