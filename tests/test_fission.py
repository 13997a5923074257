from __future__ import annotations

import allure

from image_studio.pipeline.fission import (
    BASE_STYLE_ID,
    FissionConfig,
    batch_warning,
    calculate_total,
    effective_style_ids,
    plan_fission,
    preview_fission,
)
from image_studio.pipeline.models import ExpandedPrompt
from image_studio.pipeline.services import preview_task

pytestmark = [
    allure.epic("Task Decomposition"),
    allure.feature("Fission Planner"),
]


def _variants(count: int) -> list[ExpandedPrompt]:
    return [
        ExpandedPrompt(
            variant_id=f"variant-{index}",
            variant_name=f"Variant {index}",
            original_prompt="a cat",
            expanded_prompt=f"a cat, take {index}",
            subject_slug="a-cat",
        )
        for index in range(1, count + 1)
    ]


def test_plan_enumerates_variants_styles_models_and_batch_in_fixed_order() -> None:
    plan = plan_fission(
        FissionConfig(
            task_id="task-1",
            expanded_prompts=_variants(2),
            selected_styles=("s1",),
            selected_models=("m1",),
            batch_size=1,
            include_base_style=True,
        ),
    )

    assert plan.total == 4
    assert len(plan.specs) == 4
    assert [(spec.expanded_prompt.variant_id, spec.style_id) for spec in plan.specs] == [
        ("variant-1", BASE_STYLE_ID),
        ("variant-1", "s1"),
        ("variant-2", BASE_STYLE_ID),
        ("variant-2", "s1"),
    ]
    assert {spec.model_id for spec in plan.specs} == {"m1"}
    assert {spec.batch_index for spec in plan.specs} == {0}
    assert plan.warning is None


def test_plan_batch_index_is_innermost_loop() -> None:
    plan = plan_fission(
        FissionConfig(
            task_id="task-1",
            expanded_prompts=_variants(1),
            selected_styles=("s1",),
            selected_models=("m1", "m2"),
            batch_size=2,
            include_base_style=False,
        ),
    )

    assert [(spec.model_id, spec.batch_index) for spec in plan.specs] == [
        ("m1", 0),
        ("m1", 1),
        ("m2", 0),
        ("m2", 1),
    ]
    assert plan.breakdown.style_count == 1


def test_plan_is_empty_when_any_dimension_is_empty() -> None:
    plan = plan_fission(
        FissionConfig(
            task_id="task-1",
            expanded_prompts=_variants(3),
            selected_styles=("s1",),
            selected_models=(),
            batch_size=1,
        ),
    )

    assert plan.total == 0
    assert plan.specs == []


def test_selected_base_style_is_not_duplicated() -> None:
    assert effective_style_ids(("base", "s1"), include_base_style=True) == ["base", "s1"]
    assert effective_style_ids(("s1",), include_base_style=True) == ["base", "s1"]
    assert effective_style_ids(("s1",), include_base_style=False) == ["s1"]


def test_calculate_total_treats_negative_dimensions_as_empty() -> None:
    assert calculate_total(prompt_count=3, style_count=2, model_count=2, batch_size=2) == 24
    assert calculate_total(prompt_count=-1, style_count=2, model_count=2, batch_size=2) == 0


def test_large_batch_is_flagged_not_refused() -> None:
    plan = preview_fission(
        prompt_count=10,
        style_count=9,
        model_count=3,
        batch_size=2,
        include_base_style=True,
    )

    assert plan.total == 600
    assert plan.warning is not None
    assert "600 images" in plan.warning


def test_warning_threshold_is_exclusive() -> None:
    assert batch_warning(500) is None
    assert batch_warning(501) is not None
    assert batch_warning(11, threshold=10) is not None


def test_preview_counts_implicit_base_style() -> None:
    plan = preview_fission(prompt_count=3, style_count=2, model_count=1, batch_size=1)

    assert plan.total == 9
    assert plan.breakdown.style_count == 3
    assert plan.specs == []


def test_preview_task_does_not_double_count_selected_base_style() -> None:
    plan = preview_task(
        variant_count=2,
        style_ids=("base", "s1", "s1"),
        model_count=1,
        batch_size=1,
    )

    assert plan.total == 4
    assert plan.breakdown.style_count == 2
