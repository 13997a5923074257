"""Deterministic asset filenames, content-type maps, and alt text."""

from __future__ import annotations

import re
import time
import unicodedata
from dataclasses import dataclass

FILENAME_PREFIX = "image"
MAX_SUBJECT_SLUG_LENGTH = 50
UNKNOWN_COMPONENT = "unknown"

_COMBINING_MARKS = re.compile(r"[\u0300-\u036f]")
_NON_ASCII = re.compile(r"[^\x00-\x7f]")
_WHITESPACE = re.compile(r"\s+")
_INVALID_CHARS = re.compile(r"[^a-z0-9-]")
_MULTIPLE_HYPHENS = re.compile(r"-+")
_FILENAME_PATTERN = re.compile(r"^image_(\d+)_(.+)_(.+)_(.+)_(\d+)\.(\w+)$", re.ASCII)

_MIME_TO_EXTENSION: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
}
_EXTENSION_TO_MIME: dict[str, str] = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "mp4": "video/mp4",
    "webm": "video/webm",
}


@dataclass(slots=True, frozen=True)
class FilenameParams:
    """Components of a generated asset filename.

    ``batch_index`` is 0-based; ``timestamp`` is unix seconds and defaults to now.
    """

    subject_slug: str
    style_id: str
    model_id: str
    batch_index: int
    extension: str = "png"
    timestamp: int | None = None


def slugify(value: str, *, empty: str = UNKNOWN_COMPONENT) -> str:
    """Lowercase ASCII slug made of ``[a-z0-9-]`` only."""

    if not value or not value.strip():
        return empty
    normalized = unicodedata.normalize("NFD", value.lower())
    normalized = _COMBINING_MARKS.sub("", normalized)
    normalized = _NON_ASCII.sub("", normalized)
    normalized = _WHITESPACE.sub("-", normalized)
    normalized = _INVALID_CHARS.sub("", normalized)
    normalized = _MULTIPLE_HYPHENS.sub("-", normalized)
    return normalized.strip("-") or empty


def truncate_slug(value: str, max_length: int = MAX_SUBJECT_SLUG_LENGTH) -> str:
    if len(value) <= max_length:
        return value
    return value[:max_length].rstrip("-")


def generate_filename(params: FilenameParams) -> str:
    """Render ``image_{ts}_{subject}_{style}_{model}_{NN}.{ext}``."""

    timestamp = params.timestamp if params.timestamp is not None else int(time.time())
    subject = truncate_slug(slugify(params.subject_slug))
    style = slugify(params.style_id)
    model = slugify(params.model_id)
    padded_index = str(params.batch_index + 1).zfill(2)
    extension = params.extension.removeprefix(".").lower()
    return f"{FILENAME_PREFIX}_{timestamp}_{subject}_{style}_{model}_{padded_index}.{extension}"


def parse_filename(filename: str) -> FilenameParams | None:
    """Inverse of ``generate_filename``; ``None`` for names it did not produce."""

    match = _FILENAME_PATTERN.match(filename)
    if match is None:
        return None
    timestamp, subject, style, model, index, extension = match.groups()
    return FilenameParams(
        subject_slug=subject,
        style_id=style,
        model_id=model,
        batch_index=int(index) - 1,
        extension=extension,
        timestamp=int(timestamp),
    )


def extension_from_mime_type(mime_type: str) -> str:
    return _MIME_TO_EXTENSION.get(mime_type.lower(), "bin")


def mime_type_from_extension(extension: str) -> str:
    return _EXTENSION_TO_MIME.get(extension.removeprefix(".").lower(), "application/octet-stream")


def generate_alt_text(subject_slug: str, style_name: str, model_name: str) -> str:
    subject = subject_slug.replace("-", " ")
    return f"AI-generated image: {subject} in {style_name} style, created with {model_name}"
