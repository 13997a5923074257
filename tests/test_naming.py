from __future__ import annotations

import allure

from image_studio.assets.naming import (
    FilenameParams,
    extension_from_mime_type,
    generate_alt_text,
    generate_filename,
    mime_type_from_extension,
    parse_filename,
    slugify,
    truncate_slug,
)
from image_studio.pipeline.prompt_optimizer import generate_subject_slug

pytestmark = [
    allure.epic("Asset Pipeline"),
    allure.feature("Deterministic Naming"),
]


def test_slugify_strips_accents_and_punctuation() -> None:
    assert slugify("café scene") == "cafe-scene"
    assert slugify("  Hello,   World!! ") == "hello-world"
    assert slugify("a -- b") == "a-b"


def test_slugify_empty_values_fall_back() -> None:
    assert slugify("") == "unknown"
    assert slugify("猫猫猫") == "unknown"
    assert slugify("!!!", empty="untitled") == "untitled"


def test_subject_slug_uses_untitled_fallback_and_length_cap() -> None:
    assert generate_subject_slug("café scene") == "cafe-scene"
    assert generate_subject_slug("猫猫猫") == "untitled"
    assert generate_subject_slug("") == "untitled"

    long_slug = generate_subject_slug("word " * 30)
    assert len(long_slug) <= 50
    assert not long_slug.endswith("-")


def test_truncate_slug_trims_trailing_hyphen() -> None:
    assert truncate_slug("abcd-efgh", 5) == "abcd"
    assert truncate_slug("short", 50) == "short"


def test_generate_filename_pads_one_based_index() -> None:
    filename = generate_filename(
        FilenameParams(
            subject_slug="red-fox",
            style_id="Cinematic Look",
            model_id="flux-pro",
            batch_index=0,
            extension=".PNG",
            timestamp=1700000000,
        ),
    )

    assert filename == "image_1700000000_red-fox_cinematic-look_flux-pro_01.png"


def test_parse_filename_inverts_generate_filename() -> None:
    params = FilenameParams(
        subject_slug="red-fox",
        style_id="base",
        model_id="flux-dev",
        batch_index=11,
        extension="webp",
        timestamp=1700000000,
    )

    assert parse_filename(generate_filename(params)) == params
    assert parse_filename("holiday.png") is None


def test_content_type_maps_and_alt_text() -> None:
    assert extension_from_mime_type("image/jpeg") == "jpg"
    assert extension_from_mime_type("application/x-unknown") == "bin"
    assert mime_type_from_extension(".JPG") == "image/jpeg"
    assert mime_type_from_extension("tiff") == "application/octet-stream"
    assert generate_alt_text("red-fox", "Cinematic", "Flux Pro") == (
        "AI-generated image: red fox in Cinematic style, created with Flux Pro"
    )
