from __future__ import annotations

import logging
import time

import httpx

from xbrch.core.config import get_settings
from xbrch.core.errors import OracleError, ProviderConfigError


logger = logging.getLogger(__name__)


class OpenAIChatProvider:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def complete(
        self,
        messages: list[dict],
        *,
        temperature: float = 0.7,
        max_tokens: int = 300,
    ) -> str:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for the OpenAI oracle")

        payload = {
            "model": self._settings.openai_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        client = self._get_client()

        # Single attempt: the oracle layer falls back on any failure instead of retrying.
        start = time.monotonic()
        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "openai_chat_transport_error latency_ms=%.1f",
                (time.monotonic() - start) * 1000.0,
            )
            raise OracleError("OpenAI chat request failed.") from exc

        if response.status_code >= 400:
            error = OracleError(f"OpenAI chat error: {response.status_code}")
            setattr(error, "status_code", response.status_code)
            raise error

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise OracleError("OpenAI chat returned an unexpected body.") from exc
        if not isinstance(content, str):
            raise OracleError("OpenAI chat returned non-text content.")
        logger.debug(
            "openai_chat_complete model=%s latency_ms=%.1f",
            self._settings.openai_model,
            (time.monotonic() - start) * 1000.0,
        )
        return content
