"""httpx-backed provider clients."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from prompt_visibility.batch.errors import ProviderCallError
from prompt_visibility.batch.failure_classifier import classify_provider_failure
from prompt_visibility.batch.models import FailureClass
from prompt_visibility.batch.providers.base import ProviderResponse

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
ERROR_BODY_PREVIEW_CHARS = 500


class HttpProviderClient:
    """Base client: one JSON POST per prompt with uniform error mapping."""

    name = "http"

    def __init__(
        self,
        *,
        model: str,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        temperature: float = 0.3,
        max_output_tokens: int = 4_000,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        base_headers = {"Content-Type": "application/json"}
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=DEFAULT_CONNECT_TIMEOUT_SECONDS),
            headers=base_headers,
            transport=transport,
        )

    def complete(self, prompt_text: str, *, timeout: float | None = None) -> ProviderResponse:
        url, params = self._endpoint()
        try:
            response = self._client.post(
                url,
                params=params,
                json=self._body(prompt_text),
                timeout=self._call_timeout(timeout),
            )
        except httpx.TimeoutException as exc:
            raise ProviderCallError(
                f"{self.name} request timed out: {exc}",
                failure_class=FailureClass.TIMEOUT,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderCallError(
                f"{self.name} network error: {exc}",
                failure_class=FailureClass.BACKEND_TRANSIENT,
            ) from exc

        if not response.is_success:
            body = response.text[:ERROR_BODY_PREVIEW_CHARS]
            classification = classify_provider_failure(
                provider=self.name,
                status_code=response.status_code,
                message=body,
            )
            logger.debug(
                "Provider %s returned HTTP %d (%s)",
                self.name,
                response.status_code,
                classification.reason_code,
            )
            raise ProviderCallError(
                f"HTTP {response.status_code}: {body}",
                failure_class=classification.failure_class,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderCallError(
                f"{self.name} returned a non-JSON body",
                failure_class=FailureClass.BACKEND_TRANSIENT,
                status_code=response.status_code,
            ) from exc

        if not isinstance(data, dict):
            raise ProviderCallError(
                f"{self.name} returned a JSON {type(data).__name__} instead of an object",
                failure_class=FailureClass.BACKEND_NON_RETRYABLE,
                status_code=response.status_code,
            )
        try:
            text = self._extract_text(data)
            token_in, token_out = self._extract_usage(data)
        except (AttributeError, TypeError, ValueError, KeyError, IndexError) as exc:
            raise ProviderCallError(
                f"{self.name} returned an unexpected payload: {exc!r}",
                failure_class=FailureClass.BACKEND_NON_RETRYABLE,
                status_code=response.status_code,
            ) from exc
        if not text.strip():
            raise ProviderCallError(
                f"{self.name} returned no response text",
                failure_class=FailureClass.EMPTY_RESPONSE,
                status_code=response.status_code,
            )
        return ProviderResponse(
            text=text,
            model=self.model,
            token_in=token_in,
            token_out=token_out,
            raw=data,
        )

    def close(self) -> None:
        self._client.close()

    def _call_timeout(self, timeout: float | None) -> httpx.Timeout:
        capped = self.timeout_seconds if timeout is None else min(timeout, self.timeout_seconds)
        return httpx.Timeout(capped, connect=min(capped, DEFAULT_CONNECT_TIMEOUT_SECONDS))

    def __enter__(self) -> HttpProviderClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _endpoint(self) -> tuple[str, dict[str, str]]:
        raise NotImplementedError

    def _body(self, prompt_text: str) -> dict[str, Any]:
        raise NotImplementedError

    def _extract_text(self, data: dict[str, Any]) -> str:
        raise NotImplementedError

    def _extract_usage(self, data: dict[str, Any]) -> tuple[int, int]:
        return 0, 0


class ChatCompletionsClient(HttpProviderClient):
    """OpenAI-compatible ``/chat/completions`` API (OpenAI, Perplexity)."""

    def __init__(
        self,
        *,
        name: str,
        api_key: str,
        base_url: str,
        model: str,
        timeout_seconds: float,
        temperature: float = 0.3,
        max_output_tokens: int = 4_000,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(
            model=model,
            timeout_seconds=timeout_seconds,
            headers={"Authorization": f"Bearer {api_key}"},
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            transport=transport,
        )
        self.name = name
        self._url = f"{base_url.rstrip('/')}/chat/completions"

    def _endpoint(self) -> tuple[str, dict[str, str]]:
        return self._url, {}

    def _body(self, prompt_text: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt_text}],
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
        }

    def _extract_text(self, data: dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content")
        return content if isinstance(content, str) else ""

    def _extract_usage(self, data: dict[str, Any]) -> tuple[int, int]:
        usage = data.get("usage") or {}
        return int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)


class GeminiClient(HttpProviderClient):
    """Google Generative Language ``generateContent``; key travels in the query string."""

    name = "gemini"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        model: str,
        timeout_seconds: float,
        temperature: float = 0.3,
        max_output_tokens: int = 4_000,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(
            model=model,
            timeout_seconds=timeout_seconds,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            transport=transport,
        )
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/models/{model}:generateContent"

    def _endpoint(self) -> tuple[str, dict[str, str]]:
        return self._url, {"key": self._api_key}

    def _body(self, prompt_text: str) -> dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": prompt_text}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

    def _extract_text(self, data: dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    def _extract_usage(self, data: dict[str, Any]) -> tuple[int, int]:
        usage = data.get("usageMetadata") or {}
        return (
            int(usage.get("promptTokenCount") or 0),
            int(usage.get("candidatesTokenCount") or 0),
        )


class AiOverviewClient(HttpProviderClient):
    """Internal search-overview service authenticated by a shared service key."""

    name = "google_ai_overview"

    def __init__(
        self,
        *,
        service_url: str,
        service_key: str,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(
            model="google-ai-overview",
            timeout_seconds=timeout_seconds,
            headers={"Authorization": f"Bearer {service_key}"},
            transport=transport,
        )
        self._url = service_url

    def _endpoint(self) -> tuple[str, dict[str, str]]:
        return self._url, {}

    def _body(self, prompt_text: str) -> dict[str, Any]:
        return {"query": prompt_text}

    def _extract_text(self, data: dict[str, Any]) -> str:
        for key in ("summary", "text", "overview"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
        return ""
