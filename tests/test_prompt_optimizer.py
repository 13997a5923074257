from __future__ import annotations

import json

import allure
import httpx
import pytest

from image_studio.pipeline.prompt_optimizer import (
    SYSTEM_PROMPT,
    GeminiProvider,
    LlmPromptOptimizer,
    PromptExpansionError,
    build_user_prompt,
    generate_subject_slug,
    parse_expansion_response,
)

pytestmark = [
    allure.epic("Prompt Expansion"),
    allure.feature("LLM Prompt Optimizer"),
]


def _response(**overrides) -> str:
    payload = {
        "variants": [
            {
                "variantId": "v-neon",
                "variantName": "Neon",
                "expandedPrompt": "  a cat under neon signs, rain, reflections  ",
                "suggestedNegativePrompt": "blurry",
                "keywords": ["neon", "rain"],
            },
            {"expandedPrompt": "a cat in a sunlit meadow"},
        ],
        "subjectSlug": "Neon Cat",
        "searchContext": "cyberpunk is trending",
    }
    payload.update(overrides)
    return json.dumps(payload)


class FakeProvider:
    provider_id = "fake"

    def __init__(self, answer: str) -> None:
        self.answer = answer
        self.prompts: list[tuple[str, str]] = []

    def generate(self, prompt: str, system_prompt: str) -> str:
        self.prompts.append((prompt, system_prompt))
        return self.answer


def test_parse_expansion_response_reads_variants_and_defaults() -> None:
    result = parse_expansion_response(_response(), subject="a cat")

    first, second = result.variants
    assert first.variant_id == "v-neon"
    assert first.variant_name == "Neon"
    assert first.expanded_prompt == "a cat under neon signs, rain, reflections"
    assert first.suggested_negative_prompt == "blurry"
    assert first.keywords == ["neon", "rain"]
    assert (second.variant_id, second.variant_name) == ("variant-2", "Variant 2")
    assert second.keywords == []
    assert result.subject_slug == "neon-cat"
    assert result.search_context == "cyberpunk is trending"


def test_parse_expansion_response_strips_markdown_fence() -> None:
    raw = f"Here you go:\n```json\n{_response()}\n```\n"

    result = parse_expansion_response(raw, subject="a cat")

    assert len(result.variants) == 2


def test_parse_expansion_response_falls_back_to_subject_slug() -> None:
    result = parse_expansion_response(_response(subjectSlug="  "), subject="Café au Lait!")

    assert result.subject_slug == "cafe-au-lait"


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("   ", "empty response"),
        ("{not json", "invalid JSON"),
        ("[1, 2]", "must be a JSON object"),
        (json.dumps({"variants": []}), "missing variants"),
        (json.dumps({"variants": ["text"]}), "Variant 1 must be a JSON object"),
        (json.dumps({"variants": [{"variantName": "x"}]}), "Variant 1 has no expandedPrompt"),
    ],
)
def test_parse_expansion_response_rejects_malformed_answers(raw: str, message: str) -> None:
    with pytest.raises(PromptExpansionError, match=message):
        parse_expansion_response(raw, subject="a cat")


def test_generate_subject_slug_truncates_and_handles_empty() -> None:
    slug = generate_subject_slug("word " * 30)

    assert len(slug) <= 50
    assert not slug.endswith("-")
    assert generate_subject_slug("???") == "untitled"


def test_build_user_prompt_mentions_search_only_when_enabled() -> None:
    plain = build_user_prompt("a cat", variant_count=3, search_enabled=False)
    searching = build_user_prompt("a cat", variant_count=3, search_enabled=True)

    assert "Subject: a cat" in plain
    assert "Create 3 distinct prompt variants." in plain
    assert "web search" not in plain
    assert "searchContext" in searching


def test_optimizer_drops_search_context_when_search_disabled() -> None:
    provider = FakeProvider(_response())
    optimizer = LlmPromptOptimizer(provider)

    result = optimizer.expand("a cat", 2, False)

    assert result.search_context is None
    assert optimizer.provider_id == "fake"
    prompt, system_prompt = provider.prompts[0]
    assert "Create 2 distinct" in prompt
    assert system_prompt == SYSTEM_PROMPT


def test_optimizer_keeps_search_context_when_search_enabled() -> None:
    result = LlmPromptOptimizer(FakeProvider(_response())).expand("a cat", 2, True)

    assert result.search_context == "cyberpunk is trending"


def test_gemini_provider_posts_generate_content_request() -> None:
    captured: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {"content": {"parts": [{"text": '{"variants": '}, {"text": "[]}"}]}},
                ],
            },
        )

    provider = GeminiProvider(api_key="g-key", transport=httpx.MockTransport(_handler))
    text = provider.generate("Subject: a cat", "system")
    provider.close()

    assert text == '{"variants": []}'
    request = captured[0]
    assert request.method == "POST"
    assert request.url.path == "/v1beta/models/gemini-1.5-pro:generateContent"
    assert request.url.params["key"] == "g-key"
    body = json.loads(request.content)
    assert body["systemInstruction"]["parts"][0]["text"] == "system"
    assert body["contents"][0]["parts"][0]["text"] == "Subject: a cat"
    assert body["generationConfig"]["responseMimeType"] == "application/json"


def test_gemini_provider_raises_on_http_error() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(403, text="API key invalid"))
    provider = GeminiProvider(api_key="bad", transport=transport)

    with pytest.raises(PromptExpansionError, match="HTTP 403 API key invalid"):
        provider.generate("Subject: a cat", "system")


def test_gemini_provider_raises_without_candidates() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"candidates": []}))
    provider = GeminiProvider(api_key="k", transport=transport)

    with pytest.raises(PromptExpansionError, match="no candidates"):
        provider.generate("Subject: a cat", "system")
