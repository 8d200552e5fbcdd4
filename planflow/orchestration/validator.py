from __future__ import annotations

from collections import defaultdict
from typing import Any, Mapping

from ..catalog.capabilities import CapabilityCatalog
from ..catalog.tasks import TaskCatalog
from ..core import metrics
from ..core.config import PlanningSettings
from ..core.exceptions import PlanValidationError
from ..core.logging import get_logger
from ..schemas.plan import ExecutionPlan, PlanStage, PlanValidationResult

logger = get_logger(name=__name__)


class PlanValidator:
    """Checks a generated plan before execution.

    Errors block execution; warnings and suggestions are advisory. Checks run in
    a fixed order: structure, catalog references, cycles, ordering, entry-stage
    inputs, timeouts and finally optimization hints.
    """

    def __init__(
        self,
        *,
        tasks: TaskCatalog,
        capabilities: CapabilityCatalog,
        settings: PlanningSettings | None = None,
    ) -> None:
        self._tasks = tasks
        self._capabilities = capabilities
        self._settings = settings or PlanningSettings()

    def validate(self, plan: ExecutionPlan, state: Mapping[str, Any] | None = None) -> PlanValidationResult:
        state = state or {}
        errors: list[str] = []
        warnings: list[str] = []
        suggestions: list[str] = []

        self._check_structure(plan, errors)
        if plan.stages:
            self._check_catalog_references(plan, errors, warnings)
            for cycle in find_cycles(plan.stages):
                errors.append(f"Circular dependency detected: {' -> '.join(cycle)}")
            self._check_ordering(plan, errors)
            self._check_entry_requirements(plan, state, errors, warnings)
            self._check_timeouts(plan, warnings)
            self._collect_suggestions(plan, suggestions)

        result = PlanValidationResult(valid=not errors, errors=errors, warnings=warnings, suggestions=suggestions)
        metrics.record_plan_validation(valid=result.valid)
        log = logger.info if result.valid else logger.warning
        log(
            "plan_validated",
            plan_id=plan.plan_id,
            valid=result.valid,
            errors=len(errors),
            warnings=len(warnings),
            suggestions=len(suggestions),
        )
        return result

    def is_valid(self, plan: ExecutionPlan, state: Mapping[str, Any] | None = None) -> bool:
        return self.validate(plan, state).valid

    def ensure_valid(self, plan: ExecutionPlan, state: Mapping[str, Any] | None = None) -> ExecutionPlan:
        """Validate ``plan`` and return a copy carrying the result; raise when it has errors."""
        result = self.validate(plan, state)
        if not result.valid:
            raise PlanValidationError(
                f"Plan '{plan.plan_id}' failed validation: {'; '.join(result.errors)}",
                errors=result.errors,
            )
        return plan.with_validation(result)

    def _check_structure(self, plan: ExecutionPlan, errors: list[str]) -> None:
        if not plan.plan_id:
            errors.append("Plan is missing a plan id")
        if not plan.stages:
            errors.append("Plan has no stages")
            return
        seen: set[str] = set()
        for stage in plan.stages:
            if stage.stage_id in seen:
                errors.append(f"Duplicate stage id: {stage.stage_id}")
            seen.add(stage.stage_id)

    def _check_catalog_references(self, plan: ExecutionPlan, errors: list[str], warnings: list[str]) -> None:
        for stage in plan.stages:
            task = self._tasks.get(stage.task_id)
            if task is None:
                errors.append(f"Stage {stage.stage_id}: task '{stage.task_id}' not found in task catalog")
                continue
            if not task.enabled:
                errors.append(f"Stage {stage.stage_id}: task '{stage.task_id}' is disabled")
            for tool in stage.tools_needed:
                capability = self._capabilities.get(tool)
                if capability is None:
                    warnings.append(f"Stage {stage.stage_id}: capability '{tool}' not found in capability catalog")
                elif capability.deprecated:
                    replacement = f", use '{capability.replaced_by}' instead" if capability.replaced_by else ""
                    warnings.append(f"Stage {stage.stage_id}: capability '{tool}' is deprecated{replacement}")

    def _check_ordering(self, plan: ExecutionPlan, errors: list[str]) -> None:
        by_id = {stage.stage_id: stage for stage in plan.stages}
        for stage in plan.stages:
            for dependency_id in stage.depends_on:
                dependency = by_id.get(dependency_id)
                if dependency is None:
                    errors.append(f"Stage {stage.stage_id} depends on unknown stage {dependency_id}")
                elif dependency.order >= stage.order:
                    errors.append(
                        f"Stage {stage.stage_id} (order {stage.order}) depends on "
                        f"{dependency_id} (order {dependency.order}) which does not run earlier"
                    )

    def _check_entry_requirements(
        self,
        plan: ExecutionPlan,
        state: Mapping[str, Any],
        errors: list[str],
        warnings: list[str],
    ) -> None:
        first = min(plan.stages, key=lambda stage: stage.order)
        ambient = set(self._settings.ambient_state_fields)
        produced = {name for stage in plan.stages for name in stage.provides}
        for name in first.requires:
            if name in ambient or state.get(name) is not None:
                continue
            if name in produced:
                warnings.append(
                    f"Entry stage {first.stage_id} requires '{name}' which is only produced by a later stage"
                )
            else:
                errors.append(f"Entry stage {first.stage_id} requires '{name}' which is missing and never produced")

    def _check_timeouts(self, plan: ExecutionPlan, warnings: list[str]) -> None:
        timeout = plan.context.timeout_ms
        estimated = plan.estimates.estimated_duration_ms
        if timeout < estimated:
            warnings.append(f"Plan timeout ({timeout} ms) is shorter than the estimated duration ({estimated} ms)")
        for stage in plan.stages:
            if stage.estimated_duration_ms > timeout:
                warnings.append(
                    f"Stage {stage.stage_id} estimate ({stage.estimated_duration_ms} ms) exceeds the plan timeout"
                )

    def _collect_suggestions(self, plan: ExecutionPlan, suggestions: list[str]) -> None:
        by_order: dict[int, list[PlanStage]] = defaultdict(list)
        for stage in plan.stages:
            if stage.can_run_in_parallel:
                by_order[stage.order].append(stage)
        for order, members in sorted(by_order.items()):
            ungrouped = [stage.stage_id for stage in members if stage.parallel_group is None]
            if len(members) > 1 and ungrouped:
                suggestions.append(
                    f"Stages {', '.join(ungrouped)} at order {order} can run in parallel; assign a parallel group"
                )
        for stage in plan.stages:
            if stage.skip_conditions and stage.provides:
                covered = set(stage.skip_conditions.checked_fields)
                if set(stage.provides) <= covered:
                    suggestions.append(
                        f"Stage {stage.stage_id} outputs already exist in state; consider removing it from the plan"
                    )


def find_cycles(stages: list[PlanStage]) -> list[list[str]]:
    """Depth-first search with a recursion stack; each cycle is returned in traversal order, closed."""
    graph = {stage.stage_id: [dep for dep in stage.depends_on] for stage in stages}
    visited: set[str] = set()
    on_stack: list[str] = []
    cycles: list[list[str]] = []
    reported: set[frozenset[str]] = set()

    def visit(node: str) -> None:
        visited.add(node)
        on_stack.append(node)
        for neighbour in graph.get(node, []):
            if neighbour not in graph:
                continue
            if neighbour in on_stack:
                cycle = on_stack[on_stack.index(neighbour):] + [neighbour]
                signature = frozenset(cycle)
                if signature not in reported:
                    reported.add(signature)
                    cycles.append(cycle)
            elif neighbour not in visited:
                visit(neighbour)
        on_stack.pop()

    for stage_id in graph:
        if stage_id not in visited:
            visit(stage_id)
    return cycles
