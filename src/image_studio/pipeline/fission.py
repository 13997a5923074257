"""Fission planner: expand a task configuration into sub-task specifications."""

from __future__ import annotations

from dataclasses import dataclass, field

from image_studio.pipeline.models import ExpandedPrompt

BASE_STYLE_ID = "base"
BATCH_WARNING_THRESHOLD = 500


@dataclass(slots=True)
class FissionConfig:
    """Task configuration consumed by the planner."""

    task_id: str
    expanded_prompts: list[ExpandedPrompt]
    selected_styles: tuple[str, ...]
    selected_models: tuple[str, ...]
    batch_size: int
    include_base_style: bool = True


@dataclass(slots=True)
class SubTaskSpec:
    """One (variant, style, model, batch index) combination."""

    task_id: str
    expanded_prompt: ExpandedPrompt
    style_id: str
    model_id: str
    batch_index: int


@dataclass(slots=True)
class FissionBreakdown:
    prompt_count: int
    style_count: int
    model_count: int
    batch_size: int


@dataclass(slots=True)
class FissionPlan:
    """Planned sub-task specs with totals and an optional large-batch warning."""

    total: int
    breakdown: FissionBreakdown
    specs: list[SubTaskSpec] = field(default_factory=list)
    warning: str | None = None


def effective_style_ids(
    selected_styles: tuple[str, ...] | list[str],
    *,
    include_base_style: bool,
) -> list[str]:
    """Selected styles with the implicit base style prepended when enabled."""

    styles = list(selected_styles)
    if include_base_style and BASE_STYLE_ID not in styles:
        return [BASE_STYLE_ID, *styles]
    return styles


def calculate_total(
    *,
    prompt_count: int,
    style_count: int,
    model_count: int,
    batch_size: int,
) -> int:
    """Cartesian product size; any empty dimension yields zero."""

    return max(prompt_count, 0) * max(style_count, 0) * max(model_count, 0) * max(batch_size, 0)


def plan_fission(
    config: FissionConfig,
    *,
    warning_threshold: int = BATCH_WARNING_THRESHOLD,
) -> FissionPlan:
    """Enumerate sub-task specs as variants x styles x models x batch indexes.

    Ordering is fixed: outer loop over prompt variants, then effective styles
    (implicit base first), then models, then batch index. Large plans are never
    refused, only flagged with a warning.
    """

    styles = effective_style_ids(
        config.selected_styles,
        include_base_style=config.include_base_style,
    )
    models = list(config.selected_models)
    batch_size = max(config.batch_size, 0)
    breakdown = FissionBreakdown(
        prompt_count=len(config.expanded_prompts),
        style_count=len(styles),
        model_count=len(models),
        batch_size=batch_size,
    )
    total = calculate_total(
        prompt_count=breakdown.prompt_count,
        style_count=breakdown.style_count,
        model_count=breakdown.model_count,
        batch_size=batch_size,
    )

    specs: list[SubTaskSpec | None] = [None] * total
    position = 0
    for expanded_prompt in config.expanded_prompts:
        for style_id in styles:
            for model_id in models:
                for batch_index in range(batch_size):
                    specs[position] = SubTaskSpec(
                        task_id=config.task_id,
                        expanded_prompt=expanded_prompt,
                        style_id=style_id,
                        model_id=model_id,
                        batch_index=batch_index,
                    )
                    position += 1

    return FissionPlan(
        total=total,
        breakdown=breakdown,
        specs=[spec for spec in specs if spec is not None],
        warning=batch_warning(total, threshold=warning_threshold),
    )


def preview_fission(  # noqa: PLR0913
    *,
    prompt_count: int,
    style_count: int,
    model_count: int,
    batch_size: int,
    include_base_style: bool = True,
    warning_threshold: int = BATCH_WARNING_THRESHOLD,
) -> FissionPlan:
    """Compute totals for a prospective task without materializing specs.

    The implicit base style adds one to ``style_count`` when enabled.
    """

    effective_styles = style_count + 1 if include_base_style else style_count
    breakdown = FissionBreakdown(
        prompt_count=prompt_count,
        style_count=effective_styles,
        model_count=model_count,
        batch_size=batch_size,
    )
    total = calculate_total(
        prompt_count=prompt_count,
        style_count=effective_styles,
        model_count=model_count,
        batch_size=batch_size,
    )
    return FissionPlan(
        total=total,
        breakdown=breakdown,
        warning=batch_warning(total, threshold=warning_threshold),
    )


def batch_warning(total: int, *, threshold: int = BATCH_WARNING_THRESHOLD) -> str | None:
    if total <= threshold:
        return None
    return (
        f"Large batch: {total} images will be generated. "
        "This may take significant time and resources. "
        "Consider reducing the batch size or selections."
    )
