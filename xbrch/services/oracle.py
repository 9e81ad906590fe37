from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from xbrch.core.errors import OracleError
from xbrch.domain.models import RISK_TIERS
from xbrch.providers.llm.base import LLMProvider


logger = logging.getLogger(__name__)

_PLATFORM_GUIDANCE: dict[str, str] = {
    "x": "a post of at most 280 characters, concise, with relevant hashtags",
    "facebook": "a conversational post with a clear call to action that invites comments",
    "instagram": "a visual-first caption with natural emoji use that encourages sharing",
    "linkedin": "a professional post that shares an industry insight and positions the business as an expert",
    "whatsapp": "a personal, direct message that includes how to get in touch",
    "sms": "a short text message with only the essentials and a clear call to action",
}


@dataclass(frozen=True)
class BusinessContext:
    # Prompt context drawn from the tenant's business profile.
    name: str
    city: str
    industry: str = "general"
    tone: str = "professional"


DEFAULT_BUSINESS_CONTEXT = BusinessContext(
    name="Business", city="Unknown", industry="general", tone="professional"
)


def _clamp_score(value: int) -> int:
    return max(0, min(100, int(value)))


class ScoreResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    score: int
    clarity: int = 0
    platform_fit: int = Field(default=0, alias="platformFit")
    specificity: int = 0
    cta_strength: int = Field(default=0, alias="ctaStrength")
    brand_alignment: int = Field(default=0, alias="brandAlignment")
    feedback: str = ""

    @field_validator("score")
    @classmethod
    def _bound_score(cls, value: int) -> int:
        return _clamp_score(value)


class OriginalityResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    originality_score: int = Field(alias="originalityScore")
    risk_tier: str = Field(alias="riskTier")
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)

    @field_validator("originality_score")
    @classmethod
    def _bound_score(cls, value: int) -> int:
        return _clamp_score(value)

    @field_validator("risk_tier")
    @classmethod
    def _known_tier(cls, value: str) -> str:
        if value not in RISK_TIERS:
            raise ValueError(f"unknown risk tier: {value}")
        return value


def fallback_score() -> ScoreResult:
    return ScoreResult(
        score=75,
        clarity=22,
        platform_fit=19,
        specificity=15,
        cta_strength=11,
        brand_alignment=8,
        feedback="Auto-scored due to AI error",
    )


def fallback_originality() -> OriginalityResult:
    return OriginalityResult(
        originality_score=70,
        risk_tier="Minor",
        issues=["Unable to perform full originality check"],
        suggestions=["Review for uniqueness"],
    )


class WebsiteDraft(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    meta_description: str = Field(default="", alias="metaDescription")
    meta_keywords: str = Field(default="", alias="metaKeywords")
    cta: str = ""

    @field_validator("title")
    @classmethod
    def _short_title(cls, value: str) -> str:
        return value.strip()[:120]

    @field_validator("meta_keywords", mode="before")
    @classmethod
    def _join_keywords(cls, value):
        # Some models return keywords as a list.
        if isinstance(value, list):
            return ", ".join(str(item) for item in value)
        return value


def fallback_announcement(message: str, context: BusinessContext) -> WebsiteDraft:
    return WebsiteDraft(
        title="Important Announcement",
        content=message,
        meta_description=f"Latest update from {context.name}",
        meta_keywords="announcement, update, news",
        cta="Learn More",
    )


def fallback_blog_post(topic: str, context: BusinessContext) -> WebsiteDraft:
    return WebsiteDraft(
        title=topic,
        content=(
            f"# {topic}\n\n"
            "## Introduction\n\n"
            f"Learn more about {topic} from {context.name} in {context.city}.\n\n"
            "## Key Points\n\n"
            "This topic is important for many reasons."
        ),
        meta_description=f"Learn about {topic} from {context.name}",
        meta_keywords=f"{topic}, {context.city}, {context.industry}",
    )


def _parse_json_object(raw: str) -> dict:
    # Models sometimes wrap JSON in code fences; accept the outermost object.
    text = raw.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise OracleError("oracle reply did not contain a JSON object")
    try:
        payload = json.loads(text[start : end + 1])
    except ValueError as exc:
        raise OracleError("oracle reply was not valid JSON") from exc
    if not isinstance(payload, dict):
        raise OracleError("oracle reply JSON was not an object")
    return payload


class ContentOracle:
    """Score, originality-check and adapt content through an LLM provider.

    Each operation makes one provider call. Any failure (transport, non-2xx,
    unparsable or out-of-vocabulary reply) is logged and replaced by a fixed
    fallback so a broadcast is never blocked by the external service.
    """

    def __init__(self, provider: LLMProvider) -> None:
        self._provider = provider

    async def score(
        self,
        content: str,
        platform: str,
        context: BusinessContext,
    ) -> ScoreResult:
        prompt = (
            f"Rate this social media content from 0 to 100 for the {platform} platform.\n\n"
            f"Business: {context.name} in {context.city}\n"
            f"Industry: {context.industry}\n"
            f"Tone: {context.tone}\n\n"
            f'Content: "{content}"\n\n'
            "Weigh clarity (30), platform fit (25), specificity (20), call-to-action "
            "strength (15) and brand alignment (10).\n\n"
            "Respond with JSON only:\n"
            '{"score": 0, "clarity": 0, "platformFit": 0, "specificity": 0, '
            '"ctaStrength": 0, "brandAlignment": 0, "feedback": ""}'
        )
        try:
            raw = await self._provider.complete(
                [{"role": "user", "content": prompt}], temperature=0.3, max_tokens=200
            )
            return ScoreResult.model_validate(_parse_json_object(raw))
        except (OracleError, ValidationError) as exc:
            logger.warning("oracle_score_failed platform=%s error=%s", platform, exc)
        except Exception as exc:  # noqa: BLE001 - oracle failures must never abort a broadcast
            logger.warning("oracle_score_failed platform=%s", platform, exc_info=exc)
        return fallback_score()

    async def check_originality(
        self,
        content: str,
        history: Sequence[str],
    ) -> OriginalityResult:
        previous = "\n".join(history) if history else "(none)"
        prompt = (
            "Assess how original the new content is compared with the business's "
            "previous content.\n\n"
            f'New content: "{content}"\n\n'
            f"Previous content:\n{previous}\n\n"
            "Look for repeated phrases, cliches, generic marketing language and "
            "overlap with previous content.\n"
            f"riskTier must be one of: {', '.join(RISK_TIERS)}.\n\n"
            "Respond with JSON only:\n"
            '{"originalityScore": 0, "riskTier": "Low", "issues": [], "suggestions": []}'
        )
        try:
            raw = await self._provider.complete(
                [{"role": "user", "content": prompt}], temperature=0.2, max_tokens=200
            )
            return OriginalityResult.model_validate(_parse_json_object(raw))
        except (OracleError, ValidationError) as exc:
            logger.warning("oracle_originality_failed error=%s", exc)
        except Exception as exc:  # noqa: BLE001 - oracle failures must never abort a broadcast
            logger.warning("oracle_originality_failed", exc_info=exc)
        return fallback_originality()

    async def adapt(
        self,
        content: str,
        platform: str,
        context: BusinessContext,
    ) -> str:
        guidance = _PLATFORM_GUIDANCE.get(platform, "a post suited to the platform")
        prompt = (
            f"Write {guidance} for {context.name} in {context.city}.\n\n"
            f'Original message: "{content}"\n\n'
            f"Mention {context.city} naturally, match a {context.tone} tone, "
            "stay within the platform's length limits and end with a fitting call to action.\n"
            "Reply with the finished text only."
        )
        try:
            raw = await self._provider.complete(
                [{"role": "user", "content": prompt}], temperature=0.7, max_tokens=300
            )
            adapted = raw.strip()
            if not adapted:
                raise OracleError("oracle returned empty adaptation")
            return adapted
        except OracleError as exc:
            logger.warning("oracle_adapt_failed platform=%s error=%s", platform, exc)
        except Exception as exc:  # noqa: BLE001 - oracle failures must never abort a broadcast
            logger.warning("oracle_adapt_failed platform=%s", platform, exc_info=exc)
        return content

    async def generate_announcement(self, message: str, context: BusinessContext) -> WebsiteDraft:
        prompt = (
            "Turn this update into a short website announcement for a local business.\n\n"
            f"Business: {context.name} in {context.city}\n"
            f"Industry: {context.industry}\n"
            f"Tone: {context.tone}\n\n"
            f'Message: "{message}"\n\n'
            "Use a title of at most 60 characters, two or three short paragraphs, "
            "an SEO meta description of at most 160 characters and a clear call to action.\n\n"
            "Respond with JSON only:\n"
            '{"title": "", "content": "", "metaDescription": "", "metaKeywords": "", "cta": ""}'
        )
        try:
            raw = await self._provider.complete(
                [{"role": "user", "content": prompt}], temperature=0.5, max_tokens=500
            )
            return WebsiteDraft.model_validate(_parse_json_object(raw))
        except (OracleError, ValidationError) as exc:
            logger.warning("oracle_announcement_failed error=%s", exc)
        except Exception as exc:  # noqa: BLE001 - fall back to the raw message
            logger.warning("oracle_announcement_failed", exc_info=exc)
        return fallback_announcement(message, context)

    async def generate_blog_post(self, topic: str, context: BusinessContext) -> WebsiteDraft:
        prompt = (
            "Write an educational blog post for a local business website.\n\n"
            f"Business: {context.name} in {context.city}\n"
            f"Industry: {context.industry}\n"
            f"Tone: {context.tone}\n\n"
            f'Topic: "{topic}"\n\n'
            "Aim for 800 to 1200 words in Markdown with one H1 title and H2 sections. "
            "Include local context naturally, avoid generic marketing phrases and "
            "keep the style conversational.\n\n"
            "Respond with JSON only:\n"
            '{"title": "", "content": "", "metaDescription": "", "metaKeywords": ""}'
        )
        try:
            raw = await self._provider.complete(
                [{"role": "user", "content": prompt}], temperature=0.6, max_tokens=2000
            )
            return WebsiteDraft.model_validate(_parse_json_object(raw))
        except (OracleError, ValidationError) as exc:
            logger.warning("oracle_blog_failed error=%s", exc)
        except Exception as exc:  # noqa: BLE001 - fall back to a template post
            logger.warning("oracle_blog_failed", exc_info=exc)
        return fallback_blog_post(topic, context)

    async def aclose(self) -> None:
        # Providers that hold an HTTP client expose aclose; the fake does not.
        close = getattr(self._provider, "aclose", None)
        if close is not None:
            await close()
