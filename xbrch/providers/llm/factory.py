from __future__ import annotations

from xbrch.core.config import get_settings
from xbrch.core.errors import ProviderConfigError
from xbrch.providers.llm.base import LLMProvider
from xbrch.providers.llm.fake import FakeLLMProvider
from xbrch.providers.llm.openai_chat import OpenAIChatProvider


def get_llm_provider() -> LLMProvider:
    settings = get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeLLMProvider()
    if provider == "openai":
        return OpenAIChatProvider()

    raise ProviderConfigError(f"Unsupported LLM provider: {provider}")
