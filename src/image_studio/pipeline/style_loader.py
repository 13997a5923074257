"""Style library import from JSON files of ``{name, prompt, negative_prompt}`` entries."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from image_studio.pipeline.models import StyleTemplate
from image_studio.pipeline.repository import StudioRepository
from image_studio.pipeline.style_merge import has_prompt_placeholder, validate_style_template

logger = logging.getLogger(__name__)

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]+")


@dataclass(slots=True)
class StyleImportReport:
    """Counters for one style import run."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    skipped_names: list[str] = field(default_factory=list)


def generate_style_id(name: str) -> str:
    """``3D Model`` -> ``3d-model``."""

    return _NON_ALPHANUMERIC.sub("-", name.lower()).strip("-")


def parse_style_entries(payload: object) -> list[StyleTemplate]:
    """Convert decoded JSON into templates; entries without a name are rejected."""

    if not isinstance(payload, list):
        raise ValueError("Style file must contain a JSON array of style objects.")
    styles: list[StyleTemplate] = []
    for position, entry in enumerate(payload, start=1):
        if not isinstance(entry, dict):
            raise ValueError(f"Style entry #{position} must be a JSON object.")
        name = str(entry.get("name") or "").strip()
        if not name:
            raise ValueError(f"Style entry #{position} has no name.")
        styles.append(
            StyleTemplate(
                style_id=generate_style_id(name),
                name=name,
                positive_prompt=str(entry.get("prompt") or ""),
                negative_prompt=str(entry.get("negative_prompt") or ""),
                description=str(entry["description"]) if entry.get("description") else None,
            ),
        )
    return styles


def load_style_file(path: Path) -> list[StyleTemplate]:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Style file {path} is not valid JSON: {error}") from error
    return parse_style_entries(payload)


def import_styles(repository: StudioRepository, styles: list[StyleTemplate]) -> StyleImportReport:
    """Upsert templates by style id; unusable templates are skipped with a warning."""

    report = StyleImportReport()
    for style in styles:
        if not has_prompt_placeholder(style.positive_prompt):
            logger.warning("Skipping style %r: prompt has no {prompt} placeholder", style.name)
            report.skipped += 1
            report.skipped_names.append(style.name)
            continue
        problems = validate_style_template(style)
        if problems:
            logger.warning("Skipping style %r: %s", style.name, "; ".join(problems))
            report.skipped += 1
            report.skipped_names.append(style.name)
            continue
        if repository.upsert_style(style):
            report.created += 1
        else:
            report.updated += 1
    logger.info(
        "Style import finished: %d created, %d updated, %d skipped",
        report.created,
        report.updated,
        report.skipped,
    )
    return report


def search_styles(styles: list[StyleTemplate], query: str) -> list[StyleTemplate]:
    """Case-insensitive match on style id or name."""

    needle = query.strip().lower()
    if not needle:
        return list(styles)
    return [
        style
        for style in styles
        if needle in style.style_id.lower() or needle in style.name.lower()
    ]
