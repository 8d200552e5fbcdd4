from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..catalog.capabilities import CapabilityCatalog
from ..catalog.tasks import TaskCatalog
from ..catalog.templates import TemplateRegistry, default_templates
from ..core.config import Settings, get_settings
from ..core.logging import get_logger
from ..resilience.fallbacks import FallbackRegistry
from ..resilience.layer import ResilienceLayer
from ..schemas.execution import PlanExecutionResult
from ..schemas.plan import ExecutionPlan, PlanValidationResult
from .classifier import QueryClassifier
from .engine import ExecutionOptions, WorkflowEngine
from .generator import GenerationOptions, PlanGenerator
from .monitor import PlanMetrics, PlanMonitor
from .validator import PlanValidator

logger = get_logger(name=__name__)


@dataclass(slots=True)
class PlanRunOutcome:
    plan: ExecutionPlan
    validation: PlanValidationResult
    result: PlanExecutionResult | None = None
    metrics: PlanMetrics | None = None

    @property
    def executed(self) -> bool:
        return self.result is not None

    @property
    def success(self) -> bool:
        return self.result is not None and self.result.success


class PlanRunner:
    """Plan-first pipeline: generate, validate, execute, then record metrics.

    An invalid plan is never executed; the outcome carries the validator's
    messages instead of an execution result.
    """

    def __init__(
        self,
        *,
        generator: PlanGenerator,
        validator: PlanValidator,
        engine: WorkflowEngine,
        monitor: PlanMonitor | None = None,
    ) -> None:
        self._generator = generator
        self._validator = validator
        self._engine = engine
        self._monitor = monitor

    @classmethod
    def from_settings(
        cls,
        *,
        tasks: TaskCatalog,
        capabilities: CapabilityCatalog,
        templates: TemplateRegistry | None = None,
        classifier: QueryClassifier | None = None,
        fallbacks: FallbackRegistry | None = None,
        settings: Settings | None = None,
    ) -> "PlanRunner":
        settings = settings or get_settings()
        resilience = ResilienceLayer.from_settings(
            retry=settings.retry,
            circuit_breaker=settings.circuit_breaker,
            fallbacks=fallbacks,
        )
        return cls(
            generator=PlanGenerator(
                tasks=tasks,
                capabilities=capabilities,
                templates=templates or TemplateRegistry(default_templates()),
                classifier=classifier,
                settings=settings.planning,
            ),
            validator=PlanValidator(tasks=tasks, capabilities=capabilities, settings=settings.planning),
            engine=WorkflowEngine(
                tasks=tasks,
                capabilities=capabilities,
                resilience=resilience,
                settings=settings.scheduling,
                costs=settings.planning.costs,
            ),
            monitor=PlanMonitor(settings=settings.monitoring, tasks=tasks),
        )

    @property
    def monitor(self) -> PlanMonitor | None:
        return self._monitor

    async def run(
        self,
        query: str,
        state: dict[str, Any] | None = None,
        *,
        generation: GenerationOptions | None = None,
        execution: ExecutionOptions | None = None,
    ) -> PlanRunOutcome:
        state = state if state is not None else {}
        plan = await self._generator.generate_for_query(query, state, generation)
        return await self.run_plan(plan, state, execution=execution)

    async def run_plan(
        self,
        plan: ExecutionPlan,
        state: dict[str, Any],
        *,
        execution: ExecutionOptions | None = None,
    ) -> PlanRunOutcome:
        validation = self._validator.validate(plan, state)
        plan = plan.with_validation(validation)
        if not validation.valid:
            logger.warning("plan_rejected", plan_id=plan.plan_id, errors=validation.errors)
            return PlanRunOutcome(plan=plan, validation=validation)

        result = await self._engine.execute(plan, state, execution)
        metrics = self._monitor.track_execution(plan, result) if self._monitor is not None else None
        return PlanRunOutcome(plan=plan, validation=validation, result=result, metrics=metrics)
