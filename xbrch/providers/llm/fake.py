from __future__ import annotations

import json
from typing import Callable

from xbrch.core.errors import OracleError


Responder = Callable[[list[dict]], str]


class FakeLLMProvider:
    """Deterministic oracle backend for local development and tests.

    Without a responder it answers scoring and originality prompts with fixed
    JSON, drafts website posts from the quoted message or topic and echoes
    the quoted original message for adaptation prompts. A responder may
    return text or raise to simulate provider failures.
    """

    def __init__(self, responder: Responder | None = None) -> None:
        self._responder = responder
        self.calls: list[list[dict]] = []

    async def complete(
        self,
        messages: list[dict],
        *,
        temperature: float = 0.7,
        max_tokens: int = 300,
    ) -> str:
        _ = (temperature, max_tokens)
        self.calls.append(messages)
        if self._responder is not None:
            return self._responder(messages)
        return default_reply(messages)


def default_reply(messages: list[dict]) -> str:
    prompt = messages[-1].get("content", "") if messages else ""
    if "Respond with JSON" in prompt and '"score"' in prompt:
        return json.dumps(
            {
                "score": 82,
                "clarity": 25,
                "platformFit": 20,
                "specificity": 16,
                "ctaStrength": 13,
                "brandAlignment": 8,
                "feedback": "Clear message with a usable call to action",
            }
        )
    if "Respond with JSON" in prompt and '"originalityScore"' in prompt:
        return json.dumps(
            {
                "originalityScore": 88,
                "riskTier": "Low",
                "issues": [],
                "suggestions": ["Add a concrete local detail"],
            }
        )
    if "Respond with JSON" in prompt and '"metaDescription"' in prompt:
        topic = _quoted(prompt, 'Topic: "')
        if topic is not None:
            return json.dumps(
                {
                    "title": topic,
                    "content": f"# {topic}\n\n## Why it matters\n\n{topic} explained for local customers.",
                    "metaDescription": f"Learn about {topic}",
                    "metaKeywords": ["blog", topic],
                }
            )
        message = _quoted(prompt, 'Message: "') or ""
        return json.dumps(
            {
                "title": message[:60],
                "content": message,
                "metaDescription": f"Update: {message[:140]}",
                "metaKeywords": "announcement, update",
                "cta": "Learn More",
            }
        )
    adapted = _quoted(prompt, 'Original message: "')
    if adapted is None:
        raise OracleError("fake provider received an unrecognized prompt")
    return adapted


def _quoted(prompt: str, marker: str) -> str | None:
    start = prompt.find(marker)
    if start == -1:
        return None
    start += len(marker)
    end = prompt.find('"', start)
    return prompt[start:end] if end != -1 else prompt[start:]
