"""Style merge engine: substitute a base prompt into a style template."""

from __future__ import annotations

from dataclasses import dataclass

from image_studio.pipeline.fission import BASE_STYLE_ID
from image_studio.pipeline.models import StyleTemplate

PROMPT_PLACEHOLDER = "{prompt}"
BASE_STYLE_NAME = "Base (No Style)"


class InvalidStyleTemplateError(ValueError):
    """Raised when a style template cannot be stored or used."""


@dataclass(slots=True, frozen=True)
class MergedPrompt:
    final_prompt: str
    negative_prompt: str
    style_id: str
    style_name: str


def merge_style(base_prompt: str, style: StyleTemplate) -> MergedPrompt:
    """Replace the first placeholder occurrence with the verbatim base prompt.

    Later placeholder occurrences are left untouched.
    """

    return MergedPrompt(
        final_prompt=style.positive_prompt.replace(PROMPT_PLACEHOLDER, base_prompt, 1),
        negative_prompt=style.negative_prompt or "",
        style_id=style.style_id,
        style_name=style.name,
    )


def merge_multiple_styles(base_prompt: str, styles: list[StyleTemplate]) -> list[MergedPrompt]:
    return [merge_style(base_prompt, style) for style in styles]


def has_prompt_placeholder(positive_prompt: str) -> bool:
    return PROMPT_PLACEHOLDER in positive_prompt


def validate_style_template(style: StyleTemplate) -> list[str]:
    """Return human-readable problems; an empty list means the template is usable."""

    problems: list[str] = []
    if not style.style_id.strip():
        problems.append("style_id must not be empty")
    if not style.name.strip():
        problems.append("name must not be empty")
    occurrences = style.positive_prompt.count(PROMPT_PLACEHOLDER)
    if occurrences == 0:
        problems.append(f"positive prompt must contain the {PROMPT_PLACEHOLDER} placeholder")
    elif occurrences > 1:
        problems.append(
            f"positive prompt contains {occurrences} {PROMPT_PLACEHOLDER} placeholders; "
            "only the first one would be substituted",
        )
    return problems


def ensure_valid_style_template(style: StyleTemplate) -> None:
    problems = validate_style_template(style)
    if problems:
        raise InvalidStyleTemplateError(
            f"Invalid style template {style.style_id!r}: " + "; ".join(problems),
        )


def create_base_style() -> StyleTemplate:
    """Pass-through template used for the implicit base style."""

    return StyleTemplate(
        style_id=BASE_STYLE_ID,
        name=BASE_STYLE_NAME,
        positive_prompt=PROMPT_PLACEHOLDER,
        negative_prompt="",
    )


def passthrough_style(style_id: str) -> StyleTemplate:
    """Stand-in for a selected style id without a stored template."""

    return StyleTemplate(
        style_id=style_id,
        name=style_id,
        positive_prompt=PROMPT_PLACEHOLDER,
        negative_prompt="",
    )


def combine_negative_prompts(*parts: str | None) -> str:
    return ", ".join(part for part in parts if part and part.strip())
