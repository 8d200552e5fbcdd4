from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.exceptions import TemplateNotFoundError
from ..schemas.plan import ConditionSet

__all__ = [
    "DEFAULT_MINIMUM_STAGES",
    "TemplateRegistry",
    "TemplateStage",
    "WorkflowTemplate",
    "default_templates",
]


class TemplateStage(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str = Field(..., min_length=1)
    order: int = Field(..., ge=1)
    required: bool = True
    parallel_eligible: bool = False
    parallel_group: int | None = None
    continue_conditions: ConditionSet | None = None


class WorkflowTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    template_id: str = Field(..., min_length=1)
    name: str = ""
    version: str = "1.0.0"
    query_types: list[str] = Field(default_factory=list)
    stages: list[TemplateStage] = Field(..., min_length=1)
    max_duration_ms: int | None = Field(None, ge=1)
    description: str = ""

    @model_validator(mode="after")
    def _check_stages(self) -> "WorkflowTemplate":
        seen: set[str] = set()
        for stage in self.stages:
            if stage.task_id in seen:
                raise ValueError(f"Duplicate task '{stage.task_id}' in template '{self.template_id}'")
            seen.add(stage.task_id)
        return self

    def ordered_stages(self) -> list[TemplateStage]:
        return sorted(self.stages, key=lambda stage: stage.order)


def linear_template(query_type: str, task_ids: Sequence[str], *, max_duration_ms: int | None = None) -> WorkflowTemplate:
    """Build a strictly sequential template (one task per order)."""
    return WorkflowTemplate(
        template_id=f"fallback_{query_type}",
        name=f"Minimal {query_type.replace('_', ' ')} workflow",
        version="fallback",
        query_types=[query_type],
        stages=[
            TemplateStage(task_id=task_id, order=index)
            for index, task_id in enumerate(task_ids, start=1)
        ],
        max_duration_ms=max_duration_ms,
    )


DEFAULT_MINIMUM_STAGES: dict[str, tuple[str, ...]] = {
    "bunker_planning": ("route_agent", "bunker_agent", "finalize"),
    "route_calculation": ("route_agent", "finalize"),
    "weather_analysis": ("route_agent", "weather_agent", "finalize"),
    "compliance": ("route_agent", "compliance_agent", "finalize"),
    "cii_rating": ("compliance_agent", "finalize"),
    "eu_ets": ("compliance_agent", "finalize"),
    "general_inquiry": ("finalize",),
}


class TemplateRegistry:
    """Workflow templates indexed by id and by the query types they serve."""

    def __init__(
        self,
        templates: Iterable[WorkflowTemplate] | None = None,
        *,
        minimum_stages: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._by_query_type: Dict[str, str] = {}
        self._minimum_stages: dict[str, tuple[str, ...]] = {
            key: tuple(value) for key, value in (minimum_stages or DEFAULT_MINIMUM_STAGES).items()
        }
        for template in templates or ():
            self.register(template)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TemplateRegistry":
        """Load templates from configuration shaped as ``{"templates": [...], "minimum_stages": {...}}``."""
        templates = [WorkflowTemplate.model_validate(item) for item in data.get("templates", [])]
        return cls(templates, minimum_stages=data.get("minimum_stages"))

    def register(self, template: WorkflowTemplate) -> None:
        self._templates[template.template_id] = template
        for query_type in template.query_types:
            self._by_query_type[query_type] = template.template_id

    def get(self, template_id: str) -> WorkflowTemplate | None:
        return self._templates.get(template_id)

    def for_query_type(self, query_type: str) -> WorkflowTemplate:
        template_id = self._by_query_type.get(query_type)
        if template_id is None:
            template = self._templates.get(query_type)
            if template is not None:
                return template
            raise TemplateNotFoundError(f"No workflow template registered for query type '{query_type}'")
        return self._templates[template_id]

    def minimum_stages(self, query_type: str) -> tuple[str, ...]:
        return self._minimum_stages.get(query_type, self._minimum_stages.get("general_inquiry", ()))

    def fallback_template(self, query_type: str, *, max_duration_ms: int | None = None) -> WorkflowTemplate:
        stages = self.minimum_stages(query_type) or ("finalize",)
        return linear_template(query_type, stages, max_duration_ms=max_duration_ms)

    def list(self) -> list[str]:
        return sorted(self._templates)

    def query_types(self) -> list[str]:
        return sorted(self._by_query_type)


def default_templates() -> list[WorkflowTemplate]:
    """Reference maritime workflows (route, weather, bunker and compliance planning)."""
    return [
        WorkflowTemplate(
            template_id="bunker_planning",
            name="Bunker planning",
            query_types=["bunker_planning"],
            stages=[
                TemplateStage(task_id="route_agent", order=1),
                TemplateStage(task_id="weather_agent", order=2, required=False, parallel_eligible=True, parallel_group=1),
                TemplateStage(task_id="compliance_agent", order=2, required=False, parallel_eligible=True, parallel_group=1),
                TemplateStage(task_id="bunker_agent", order=3),
                TemplateStage(task_id="finalize", order=4),
            ],
            max_duration_ms=60_000,
        ),
        WorkflowTemplate(
            template_id="route_only",
            name="Route calculation",
            query_types=["route_calculation"],
            stages=[
                TemplateStage(task_id="route_agent", order=1),
                TemplateStage(task_id="finalize", order=2),
            ],
            max_duration_ms=20_000,
        ),
        WorkflowTemplate(
            template_id="weather_analysis",
            name="Weather analysis",
            query_types=["weather_analysis"],
            stages=[
                TemplateStage(task_id="route_agent", order=1),
                TemplateStage(task_id="weather_agent", order=2),
                TemplateStage(task_id="finalize", order=3),
            ],
            max_duration_ms=30_000,
        ),
        WorkflowTemplate(
            template_id="compliance_check",
            name="Compliance check",
            query_types=["compliance", "cii_rating", "eu_ets"],
            stages=[
                TemplateStage(task_id="route_agent", order=1, required=False),
                TemplateStage(task_id="compliance_agent", order=2),
                TemplateStage(task_id="finalize", order=3),
            ],
            max_duration_ms=30_000,
        ),
    ]
