"""LLM prompt expansion: turn a short subject into detailed prompt variants."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from image_studio.assets.naming import MAX_SUBJECT_SLUG_LENGTH, slugify, truncate_slug
from image_studio.pipeline.models import DEFAULT_VARIANT_COUNT

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
UNTITLED_SLUG = "untitled"

SYSTEM_PROMPT = """You are an expert prompt engineer for AI image generation models.
Expand the user's short subject into detailed, vivid image prompts.

For every variant:
- keep the original subject recognizable
- describe composition, lighting, and atmosphere
- add concrete details about materials, colors, and camera or medium
- give the variant a short distinctive name

Respond with JSON only, shaped as:
{"variants": [{"variantId": "variant-1", "variantName": "...", "expandedPrompt": "...",
"suggestedNegativePrompt": "...", "keywords": ["..."]}],
"subjectSlug": "short-kebab-case-subject", "searchContext": "optional notes"}"""

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


class PromptExpansionError(RuntimeError):
    """Raised when the LLM response cannot be turned into prompt variants."""


@dataclass(slots=True)
class PromptVariant:
    variant_id: str
    variant_name: str
    expanded_prompt: str
    suggested_negative_prompt: str = ""
    keywords: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PromptExpansionResult:
    variants: list[PromptVariant]
    subject_slug: str
    search_context: str | None = None


class LlmProvider(Protocol):
    """Text completion capability used by the optimizer."""

    provider_id: str

    def generate(self, prompt: str, system_prompt: str) -> str: ...


class PromptOptimizer(Protocol):
    """Prompt expansion capability consumed by the expansion orchestrator."""

    def expand(
        self,
        subject: str,
        variant_count: int,
        search_enabled: bool,
    ) -> PromptExpansionResult: ...


class GeminiProvider:
    """Gemini ``generateContent`` over plain HTTP."""

    provider_id = "gemini"

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gemini-1.5-pro",
        base_url: str = GEMINI_BASE_URL,
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    def generate(self, prompt: str, system_prompt: str) -> str:
        response = self._client.post(
            f"/models/{self.model}:generateContent",
            params={"key": self._api_key},
            json={
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                "generationConfig": {
                    "temperature": 0.9,
                    "responseMimeType": "application/json",
                },
            },
        )
        if not response.is_success:
            raise PromptExpansionError(
                f"Gemini API error: HTTP {response.status_code} {response.text[:200]}",
            )
        payload = response.json()
        candidates = payload.get("candidates") or []
        if not candidates:
            raise PromptExpansionError("Gemini API error: no candidates returned")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(str(part.get("text", "")) for part in parts)

    def close(self) -> None:
        self._client.close()


class LlmPromptOptimizer:
    """Asks an LLM provider for prompt variants and validates the answer."""

    def __init__(self, provider: LlmProvider) -> None:
        self.provider = provider

    @property
    def provider_id(self) -> str:
        return self.provider.provider_id

    def expand(
        self,
        subject: str,
        variant_count: int = DEFAULT_VARIANT_COUNT,
        search_enabled: bool = False,
    ) -> PromptExpansionResult:
        raw = self.provider.generate(
            build_user_prompt(subject, variant_count=variant_count, search_enabled=search_enabled),
            SYSTEM_PROMPT,
        )
        result = parse_expansion_response(raw, subject=subject)
        if not search_enabled:
            result.search_context = None
        logger.info(
            "LLM %s produced %d prompt variants (slug: %s)",
            self.provider_id,
            len(result.variants),
            result.subject_slug,
        )
        return result


def build_user_prompt(subject: str, *, variant_count: int, search_enabled: bool) -> str:
    lines = [
        f"Subject: {subject}",
        f"Create {variant_count} distinct prompt variants.",
    ]
    if search_enabled:
        lines.append(
            "Use web search to ground the variants in current trends and references, "
            "and summarize what you found in searchContext.",
        )
    return "\n".join(lines)


def parse_expansion_response(raw: str, *, subject: str) -> PromptExpansionResult:
    """Parse the LLM JSON answer, tolerating a surrounding markdown code fence."""

    text = raw.strip()
    if not text:
        raise PromptExpansionError("LLM returned an empty response")
    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        text = fenced.group(1)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise PromptExpansionError(f"LLM returned invalid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise PromptExpansionError("LLM response must be a JSON object")

    raw_variants = payload.get("variants")
    if not isinstance(raw_variants, list) or not raw_variants:
        raise PromptExpansionError("LLM response is missing variants")

    variants = [
        _parse_variant(item, position=index) for index, item in enumerate(raw_variants, start=1)
    ]
    slug = payload.get("subjectSlug")
    search_context = payload.get("searchContext")
    return PromptExpansionResult(
        variants=variants,
        subject_slug=(
            generate_subject_slug(slug)
            if isinstance(slug, str) and slug.strip()
            else generate_subject_slug(subject)
        ),
        search_context=search_context if isinstance(search_context, str) else None,
    )


def generate_subject_slug(subject: str) -> str:
    """Filename-safe slug of the subject, at most 50 characters."""

    return truncate_slug(slugify(subject, empty=UNTITLED_SLUG), MAX_SUBJECT_SLUG_LENGTH)


def _parse_variant(item: Any, *, position: int) -> PromptVariant:
    if not isinstance(item, dict):
        raise PromptExpansionError(f"Variant {position} must be a JSON object")
    expanded = item.get("expandedPrompt")
    if not isinstance(expanded, str) or not expanded.strip():
        raise PromptExpansionError(f"Variant {position} has no expandedPrompt")
    keywords = item.get("keywords")
    return PromptVariant(
        variant_id=str(item.get("variantId") or f"variant-{position}"),
        variant_name=str(item.get("variantName") or f"Variant {position}"),
        expanded_prompt=expanded.strip(),
        suggested_negative_prompt=str(item.get("suggestedNegativePrompt") or ""),
        keywords=[str(keyword) for keyword in keywords] if isinstance(keywords, list) else [],
    )
