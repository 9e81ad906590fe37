from __future__ import annotations

from typing import Protocol


class LLMProvider(Protocol):
    async def complete(
        self,
        messages: list[dict],
        *,
        temperature: float = 0.7,
        max_tokens: int = 300,
    ) -> str:
        ...
