"""Prompt expansion orchestrator: variants, fission and sub-task scheduling for one task."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from image_studio.pipeline.fission import (
    BASE_STYLE_ID,
    BATCH_WARNING_THRESHOLD,
    FissionConfig,
    effective_style_ids,
    plan_fission,
)
from image_studio.pipeline.models import (
    ExpandedPrompt,
    StyleTemplate,
    SubTaskCreate,
    SubTaskView,
    TaskStatus,
    TaskView,
)
from image_studio.pipeline.prompt_optimizer import PromptOptimizer, generate_subject_slug
from image_studio.pipeline.repository import StudioRepository
from image_studio.pipeline.style_merge import create_base_style, merge_style, passthrough_style

logger = logging.getLogger(__name__)

FALLBACK_VARIANT_NAMES: tuple[str, ...] = (
    "Realistic",
    "Abstract",
    "Artistic",
    "Cinematic",
    "Surreal",
    "Minimalist",
    "Dramatic",
    "Whimsical",
    "Dark",
    "Vibrant",
)


@dataclass(slots=True)
class ExpansionSummary:
    """What one expansion run produced."""

    task_id: str
    variants: list[ExpandedPrompt] = field(default_factory=list)
    sub_task_ids: list[str] = field(default_factory=list)
    used_llm: bool = False
    warning: str | None = None
    skipped_reason: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.skipped_reason is None


def create_fallback_variants(
    subject: str,
    variant_count: int,
    subject_slug: str,
) -> list[ExpandedPrompt]:
    """Deterministic named variants built directly from the subject."""

    variants: list[ExpandedPrompt] = []
    for index in range(variant_count):
        name = (
            FALLBACK_VARIANT_NAMES[index]
            if index < len(FALLBACK_VARIANT_NAMES)
            else f"Variant {index + 1}"
        )
        variants.append(
            ExpandedPrompt(
                variant_id=f"variant-{index + 1}",
                variant_name=name,
                original_prompt=subject,
                expanded_prompt=(
                    f"{subject}, {name.lower()} style, high quality, detailed, "
                    "professional, masterpiece"
                ),
                subject_slug=subject_slug,
            ),
        )
    return variants


class PromptExpansionOrchestrator:
    """Turns a queued task into pending sub-tasks with one generate job each."""

    def __init__(
        self,
        *,
        repository: StudioRepository,
        optimizer: PromptOptimizer | None = None,
        warning_threshold: int = BATCH_WARNING_THRESHOLD,
    ) -> None:
        self.repository = repository
        self.optimizer = optimizer
        self.warning_threshold = warning_threshold

    def expand_task(self, task_id: str) -> ExpansionSummary:
        """Run the full expansion sequence; failures mark the task failed."""

        summary = ExpansionSummary(task_id=task_id)
        task = self.repository.get_task(task_id=task_id)
        if task is None:
            summary.error = f"Task not found: {task_id}"
            return summary

        moved = self.repository.transition_task(
            task_id=task_id,
            from_statuses=(TaskStatus.QUEUED, TaskStatus.EXPANDING),
            to_status=TaskStatus.EXPANDING,
            event_type="expansion_started",
        )
        if not moved:
            summary.skipped_reason = f"task is {task.status.value}"
            logger.info("Skipping expansion of task %s: %s", task_id, summary.skipped_reason)
            return summary

        try:
            self._expand(task=task, summary=summary)
        except Exception as error:  # noqa: BLE001
            logger.exception("Expansion failed for task %s", task_id)
            summary.error = str(error) or type(error).__name__
            self.repository.transition_task(
                task_id=task_id,
                from_statuses=(TaskStatus.EXPANDING,),
                to_status=TaskStatus.FAILED,
                event_type="expansion_failed",
                error_summary=summary.error,
            )
        return summary

    def _expand(self, *, task: TaskView, summary: ExpansionSummary) -> None:
        existing = self.repository.list_sub_tasks(task_id=task.task_id)
        if existing:
            self._resume(task=task, existing=existing, summary=summary)
            return

        variants, used_llm = self.expand_variants(task)
        summary.variants = variants
        summary.used_llm = used_llm
        self.repository.set_expanded_prompts(
            task_id=task.task_id,
            expanded_prompts=variants,
            source="llm" if used_llm else "fallback",
        )

        plan = plan_fission(
            FissionConfig(
                task_id=task.task_id,
                expanded_prompts=variants,
                selected_styles=task.style_ids,
                selected_models=task.model_ids,
                batch_size=task.count_per_prompt,
                include_base_style=task.include_base_style,
            ),
            warning_threshold=self.warning_threshold,
        )
        summary.warning = plan.warning
        if plan.warning:
            logger.warning("Task %s: %s", task.task_id, plan.warning)
        if plan.total == 0:
            raise RuntimeError("Fission produced no sub-tasks")

        templates = self.resolve_style_templates(task)
        items: list[SubTaskCreate] = []
        for spec in plan.specs:
            merged = merge_style(spec.expanded_prompt.expanded_prompt, templates[spec.style_id])
            items.append(
                SubTaskCreate(
                    task_id=task.task_id,
                    style_id=spec.style_id,
                    model_id=spec.model_id,
                    expanded_prompt=spec.expanded_prompt,
                    final_prompt=merged.final_prompt,
                    negative_prompt=merged.negative_prompt,
                    batch_index=spec.batch_index,
                    aspect_ratio=task.aspect_ratio,
                ),
            )
        created = self.repository.create_sub_tasks(items, enqueue_jobs=True)
        summary.sub_task_ids = [sub_task.sub_task_id for sub_task in created]

        self.repository.transition_task(
            task_id=task.task_id,
            from_statuses=(TaskStatus.EXPANDING,),
            to_status=TaskStatus.PROCESSING,
            event_type="expansion_completed",
            details={
                "sub_tasks": len(created),
                "breakdown": {
                    "prompts": plan.breakdown.prompt_count,
                    "styles": plan.breakdown.style_count,
                    "models": plan.breakdown.model_count,
                    "batch_size": plan.breakdown.batch_size,
                },
                "used_llm": used_llm,
            },
        )
        self.repository.refresh_task_progress(task_id=task.task_id)
        logger.info(
            "Task %s expanded into %d sub-tasks (LLM: %s)",
            task.task_id,
            len(created),
            used_llm,
        )

    def _resume(
        self,
        *,
        task: TaskView,
        existing: list[SubTaskView],
        summary: ExpansionSummary,
    ) -> None:
        """Finish an interrupted run whose sub-tasks were already stored."""

        requeued = self.repository.enqueue_missing_generate_jobs(task_id=task.task_id)
        summary.variants = list(task.expanded_prompts)
        summary.sub_task_ids = [sub_task.sub_task_id for sub_task in existing]
        self.repository.transition_task(
            task_id=task.task_id,
            from_statuses=(TaskStatus.EXPANDING,),
            to_status=TaskStatus.PROCESSING,
            event_type="expansion_resumed",
            details={"sub_tasks": len(existing), "requeued_jobs": len(requeued)},
        )
        self.repository.refresh_task_progress(task_id=task.task_id)
        logger.info(
            "Task %s resumed with %d existing sub-tasks, %d jobs requeued",
            task.task_id,
            len(existing),
            len(requeued),
        )

    def expand_variants(self, task: TaskView) -> tuple[list[ExpandedPrompt], bool]:
        """Prompt variants from the optimizer, or the deterministic fallback."""

        if self.optimizer is None:
            logger.info("No prompt optimizer configured, using fallback expansion")
            return self._fallback(task), False
        try:
            result = self.optimizer.expand(
                task.subject,
                task.variant_count,
                task.web_search_enabled,
            )
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "LLM expansion failed for task %s, using fallback: %s",
                task.task_id,
                error,
            )
            return self._fallback(task), False

        if result.search_context:
            logger.info("Search context for task %s: %s", task.task_id, result.search_context)
        return [
            ExpandedPrompt(
                variant_id=variant.variant_id,
                variant_name=variant.variant_name,
                original_prompt=task.subject,
                expanded_prompt=variant.expanded_prompt,
                subject_slug=result.subject_slug,
            )
            for variant in result.variants
        ], True

    def resolve_style_templates(self, task: TaskView) -> dict[str, StyleTemplate]:
        """Stored templates for the effective styles; unknown ids pass the prompt through."""

        style_ids = effective_style_ids(
            task.style_ids,
            include_base_style=task.include_base_style,
        )
        stored = self.repository.get_styles(style_ids=style_ids)
        templates: dict[str, StyleTemplate] = {}
        for style_id in style_ids:
            if style_id in stored:
                templates[style_id] = stored[style_id]
            elif style_id == BASE_STYLE_ID:
                templates[style_id] = create_base_style()
            else:
                logger.warning("Style template %s not found, using prompt as-is", style_id)
                templates[style_id] = passthrough_style(style_id)
        return templates

    def _fallback(self, task: TaskView) -> list[ExpandedPrompt]:
        return create_fallback_variants(
            task.subject,
            task.variant_count,
            generate_subject_slug(task.subject),
        )
