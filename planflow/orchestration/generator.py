"""Builds dependency-ordered execution plans from workflow templates and the task catalog."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import groupby
from typing import Any, Mapping, Sequence
from uuid import uuid4

from ..catalog.capabilities import CapabilityCatalog, CostClass
from ..catalog.tasks import TaskCatalog, TaskDefinition, normalize_identifier
from ..catalog.templates import TemplateRegistry, TemplateStage, WorkflowTemplate
from ..core import metrics
from ..core.config import PlanningSettings
from ..core.exceptions import GenerationError, TaskNotFoundError
from ..core.logging import get_logger
from ..schemas.plan import (
    ConditionSet,
    ExecutionPlan,
    PlanContext,
    PlanEstimates,
    PlanPriority,
    PlanStage,
    StagePriority,
)
from .cache import PlanCache
from .classifier import KeywordQueryClassifier, QueryClassifier

logger = get_logger(name=__name__)


@dataclass(slots=True)
class GenerationOptions:
    force_regenerate: bool = False
    exclude_tasks: Sequence[str] = field(default_factory=tuple)
    include_optional_capabilities: bool | None = None
    enable_parallel: bool | None = None
    max_stages: int | None = None
    priority: PlanPriority | str | None = None
    timeout_ms: int | None = None

    def cache_signature(self) -> str | None:
        """Digest of the plan-shaping options, ``None`` when all are left at their defaults."""
        excluded = sorted({normalize_identifier(task_id) for task_id in self.exclude_tasks})
        priority = self.priority.value if isinstance(self.priority, PlanPriority) else self.priority
        shaping = (
            excluded,
            self.include_optional_capabilities,
            self.enable_parallel,
            self.max_stages,
            priority,
            self.timeout_ms,
        )
        if shaping == ([], None, None, None, None, None):
            return None
        return hashlib.sha1(repr(shaping).encode("utf-8")).hexdigest()[:12]


@dataclass(slots=True)
class _BuiltStage:
    stage: PlanStage
    task: TaskDefinition
    billable_tools: int


class PlanGenerator:
    """Turns a workflow template into an :class:`ExecutionPlan`.

    Stages snapshot the catalog entry they were built from (inputs, outputs,
    capabilities and estimates), so later catalog changes never leak into a plan
    that has already been handed out. Generation never raises: any failure
    degrades to a minimal linear plan built from the query type's minimum viable
    stages.
    """

    def __init__(
        self,
        *,
        tasks: TaskCatalog,
        capabilities: CapabilityCatalog,
        templates: TemplateRegistry,
        classifier: QueryClassifier | None = None,
        cache: PlanCache | None = None,
        settings: PlanningSettings | None = None,
    ) -> None:
        self._tasks = tasks
        self._capabilities = capabilities
        self._templates = templates
        self._classifier = classifier or KeywordQueryClassifier()
        self._settings = settings or PlanningSettings()
        if cache is None and self._settings.cache_enabled:
            cache = PlanCache.from_settings(self._settings)
        self._cache = cache

    @property
    def cache(self) -> PlanCache | None:
        return self._cache

    async def generate_for_query(
        self,
        query: str,
        state: Mapping[str, Any],
        options: GenerationOptions | None = None,
    ) -> ExecutionPlan:
        options = options or GenerationOptions()
        cache_key: str | None = None
        if self._cache is not None:
            cache_key = self._cache.key_for(
                query,
                state,
                self._tasks.produced_fields(),
                variant=options.cache_signature(),
            )
            if not options.force_regenerate:
                cached = self._cache.get(cache_key)
                if cached is not None:
                    plan = self._refresh_cached(cached, state)
                    metrics.record_plan_generated(query_type=plan.query_type, source="cache", stages=len(plan.stages))
                    logger.info("plan_cache_hit", plan_id=plan.plan_id, query_type=plan.query_type)
                    return plan

        try:
            classification = await self._classifier.classify(query, state)
        except Exception as exc:
            logger.warning("query_classification_failed", error=str(exc))
            return self._fallback_plan(self._settings.fallback_query_type, state, options, reason=str(exc), query=query)

        plan = self.generate(classification.query_type, state, options=options, query=query)
        if cache_key is not None and not plan.is_fallback:
            self._cache.put(cache_key, plan)  # type: ignore[union-attr]
        return plan

    def generate(
        self,
        query_type: str,
        state: Mapping[str, Any],
        template: WorkflowTemplate | None = None,
        options: GenerationOptions | None = None,
        *,
        query: str | None = None,
    ) -> ExecutionPlan:
        options = options or GenerationOptions()
        try:
            resolved = template or self._templates.for_query_type(query_type)
            plan = self.build_plan(query_type, state, resolved, options, query=query)
        except GenerationError as exc:
            return self._fallback_plan(query_type, state, options, reason=str(exc), query=query)

        metrics.record_plan_generated(query_type=query_type, source="template", stages=len(plan.stages))
        logger.info(
            "plan_generated",
            plan_id=plan.plan_id,
            query_type=query_type,
            workflow_id=plan.workflow_id,
            stages=len(plan.stages),
            estimated_duration_ms=plan.estimates.estimated_duration_ms,
            estimated_cost_usd=plan.estimates.estimated_cost_usd,
        )
        return plan

    def build_plan(
        self,
        query_type: str,
        state: Mapping[str, Any],
        template: WorkflowTemplate,
        options: GenerationOptions,
        *,
        strict: bool = True,
        query: str | None = None,
    ) -> ExecutionPlan:
        include_optional = (
            self._settings.include_optional_capabilities
            if options.include_optional_capabilities is None
            else options.include_optional_capabilities
        )
        enable_parallel = self._settings.enable_parallel if options.enable_parallel is None else options.enable_parallel
        excluded = {normalize_identifier(task_id) for task_id in options.exclude_tasks}

        built: list[_BuiltStage] = []
        for template_stage in template.ordered_stages():
            if options.max_stages is not None and len(built) >= options.max_stages:
                break
            if normalize_identifier(template_stage.task_id) in excluded:
                logger.debug("plan_stage_excluded", task_id=template_stage.task_id)
                continue
            task = self._tasks.get(template_stage.task_id)
            if task is None or not task.enabled:
                reason = "is not registered in the task catalog" if task is None else "is disabled"
                if strict and template_stage.required:
                    raise TaskNotFoundError(f"Task '{template_stage.task_id}' {reason}")
                logger.warning("plan_stage_dropped", task_id=template_stage.task_id, reason=reason)
                continue
            built.append(self._build_stage(template_stage, task, built, state, include_optional, enable_parallel))

        if not built and strict:
            raise GenerationError(f"Template '{template.template_id}' produced no executable stages")

        stages = [item.stage for item in built]
        return ExecutionPlan(
            query_type=query_type,
            workflow_id=template.template_id,
            workflow_version=template.version,
            stages=stages,
            estimates=PlanEstimates(
                stage_count=len(stages),
                llm_call_count=sum(1 for item in built if item.task.uses_llm),
                api_call_count=sum(item.billable_tools for item in built),
                estimated_cost_usd=round(sum(stage.estimated_cost_usd for stage in stages), 6),
                estimated_duration_ms=critical_path_ms(stages),
            ),
            required_state=_required_state(stages),
            expected_outputs=_expected_outputs(stages),
            context=PlanContext(
                correlation_id=_correlation_id(state),
                priority=PlanPriority(options.priority or self._settings.default_priority),
                timeout_ms=options.timeout_ms or template.max_duration_ms or self._settings.default_timeout_ms,
            ),
            parallel_groups=_parallel_groups(stages),
            original_query=query,
        )

    def _build_stage(
        self,
        template_stage: TemplateStage,
        task: TaskDefinition,
        built: Sequence[_BuiltStage],
        state: Mapping[str, Any],
        include_optional: bool,
        enable_parallel: bool,
    ) -> _BuiltStage:
        tools = list(dict.fromkeys(task.required_capabilities))
        if include_optional:
            tools.extend(tool for tool in task.optional_capabilities if tool not in tools)
        requires = list(task.required_fields)
        provides = list(task.produced_fields)

        needed = set(requires)
        depends_on = [item.stage.stage_id for item in built if needed.intersection(item.stage.provides)]

        skip_conditions: ConditionSet | None = None
        if provides and all(state.get(name) is not None for name in provides):
            skip_conditions = ConditionSet.exists(provides)

        cost = 0.0
        billable = 0
        if task.llm_max_tokens:
            cost += task.llm_max_tokens * self._settings.costs.llm_cost_per_token_usd
        for tool in tools:
            cost_class = self._capabilities.cost_class(tool)
            if cost_class is CostClass.API_CALL:
                cost += self._settings.costs.api_call_cost_usd
                billable += 1
            elif cost_class is CostClass.EXPENSIVE:
                cost += self._settings.costs.expensive_call_cost_usd
                billable += 1

        stage_id = f"{task.task_id}_stage"
        taken = {item.stage.stage_id for item in built}
        suffix = 2
        while stage_id in taken:
            stage_id = f"{task.task_id}_stage_{suffix}"
            suffix += 1

        stage = PlanStage(
            stage_id=stage_id,
            order=template_stage.order,
            task_id=task.task_id,
            task_name=task.name,
            task_type=task.task_type.value,
            required=template_stage.required,
            can_run_in_parallel=template_stage.parallel_eligible and enable_parallel,
            parallel_group=template_stage.parallel_group,
            depends_on=depends_on,
            provides=provides,
            requires=requires,
            tools_needed=tools,
            skip_conditions=skip_conditions,
            continue_conditions=template_stage.continue_conditions,
            estimated_duration_ms=self._estimate_duration(task),
            estimated_cost_usd=round(cost, 6),
            priority=StagePriority.CRITICAL if template_stage.required else StagePriority.IMPORTANT,
        )
        return _BuiltStage(stage=stage, task=task, billable_tools=billable)

    def _estimate_duration(self, task: TaskDefinition) -> int:
        if task.stats.avg_execution_time_ms > 0:
            return int(round(task.stats.avg_execution_time_ms))
        if task.estimated_duration_ms:
            return int(task.estimated_duration_ms)
        return int(getattr(self._settings.type_durations, task.task_type.value, 5_000))

    def _fallback_plan(
        self,
        query_type: str,
        state: Mapping[str, Any],
        options: GenerationOptions,
        *,
        reason: str,
        query: str | None = None,
    ) -> ExecutionPlan:
        template = self._templates.fallback_template(query_type, max_duration_ms=self._settings.default_timeout_ms)
        logger.warning(
            "plan_generation_fallback",
            query_type=query_type,
            reason=reason,
            stages=[stage.task_id for stage in template.stages],
        )
        relaxed = GenerationOptions(
            exclude_tasks=options.exclude_tasks,
            include_optional_capabilities=options.include_optional_capabilities,
            enable_parallel=False,
            priority=options.priority,
            timeout_ms=options.timeout_ms,
        )
        plan = self.build_plan(query_type, state, template, relaxed, strict=False, query=query)
        plan = plan.model_copy(update={"is_fallback": True})
        metrics.record_plan_generated(query_type=query_type, source="fallback", stages=len(plan.stages))
        return plan

    def _refresh_cached(self, cached: ExecutionPlan, state: Mapping[str, Any]) -> ExecutionPlan:
        context = cached.context.model_copy(update={"correlation_id": _correlation_id(state)})
        return cached.model_copy(
            update={
                "plan_id": str(uuid4()),
                "created_at": datetime.now(timezone.utc),
                "context": context,
                "validation": None,
            }
        )


def critical_path_ms(stages: Sequence[PlanStage]) -> int:
    """Sum of per-order durations; an order with concurrent stages costs its slowest stage."""
    total = 0
    for _, group in groupby(sorted(stages, key=lambda stage: stage.order), key=lambda stage: stage.order):
        members = list(group)
        concurrent = sum(1 for stage in members if stage.can_run_in_parallel) > 1
        durations = [stage.estimated_duration_ms for stage in members]
        total += max(durations) if concurrent else sum(durations)
    return total


def _required_state(stages: Sequence[PlanStage]) -> list[str]:
    produced = {name for stage in stages for name in stage.provides}
    required: list[str] = []
    for stage in stages:
        for name in stage.requires:
            if name not in produced and name not in required:
                required.append(name)
    return required


def _expected_outputs(stages: Sequence[PlanStage]) -> list[str]:
    outputs: list[str] = []
    for stage in stages:
        outputs.extend(name for name in stage.provides if name not in outputs)
    return outputs


def _parallel_groups(stages: Sequence[PlanStage]) -> dict[str, list[str]]:
    groups: dict[str, list[str]] = {}
    for stage in stages:
        if not stage.can_run_in_parallel:
            continue
        key = str(stage.parallel_group) if stage.parallel_group is not None else f"order_{stage.order}"
        groups.setdefault(key, []).append(stage.stage_id)
    return groups


def _correlation_id(state: Mapping[str, Any]) -> str:
    value = state.get("correlation_id")
    if isinstance(value, str) and value:
        return value
    return str(uuid4())
