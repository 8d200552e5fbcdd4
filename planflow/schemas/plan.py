"""Execution plan models and their camelCase wire representation."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CHECK_OPERATORS = frozenset({"exists", "equals"})


class PlanPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class StagePriority(str, Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class ConditionSet(_WireModel):
    """Data-only predicate over state fields; every check must hold.

    A check is ``{"exists": bool}``, ``{"equals": value}`` or a bare literal that
    the field must equal.
    """

    state_checks: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("state_checks")
    @classmethod
    def _validate_checks(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        for field_name, check in value.items():
            if not field_name:
                raise ValueError("State check field names must not be empty")
            if isinstance(check, Mapping):
                keys = set(check)
                if len(keys) != 1 or not keys <= CHECK_OPERATORS:
                    raise ValueError(
                        f"State check for '{field_name}' must use exactly one of {sorted(CHECK_OPERATORS)}"
                    )
                if "exists" in check and not isinstance(check["exists"], bool):
                    raise ValueError(f"State check 'exists' for '{field_name}' must be a boolean")
        return value

    @classmethod
    def exists(cls, fields: List[str]) -> "ConditionSet":
        return cls(state_checks={field_name: {"exists": True} for field_name in fields})

    @property
    def checked_fields(self) -> list[str]:
        return list(self.state_checks)

    def __bool__(self) -> bool:
        return bool(self.state_checks)


class PlanStage(_WireModel):
    stage_id: str = Field(..., min_length=1)
    order: int = Field(..., ge=1)
    task_id: str = Field(..., min_length=1)
    task_name: str = ""
    task_type: str = "specialist"
    required: bool = True
    can_run_in_parallel: bool = False
    parallel_group: int | None = None
    depends_on: List[str] = Field(default_factory=list)
    provides: List[str] = Field(default_factory=list)
    requires: List[str] = Field(default_factory=list)
    tools_needed: List[str] = Field(default_factory=list)
    skip_conditions: ConditionSet | None = None
    continue_conditions: ConditionSet | None = None
    estimated_duration_ms: int = Field(0, ge=0)
    estimated_cost_usd: float = Field(0.0, ge=0.0, alias="estimatedCostUSD")
    priority: StagePriority = StagePriority.IMPORTANT


class PlanEstimates(_WireModel):
    stage_count: int = Field(0, ge=0)
    llm_call_count: int = Field(0, ge=0)
    api_call_count: int = Field(0, ge=0)
    estimated_cost_usd: float = Field(0.0, ge=0.0, alias="estimatedCostUSD")
    estimated_duration_ms: int = Field(0, ge=0)


class PlanContext(_WireModel):
    correlation_id: str = Field(default_factory=lambda: str(uuid4()))
    priority: PlanPriority = PlanPriority.NORMAL
    timeout_ms: int = Field(60_000, ge=1)


class PlanValidationResult(_WireModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class ExecutionPlan(_WireModel):
    plan_id: str = Field(default_factory=lambda: str(uuid4()))
    query_type: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    workflow_id: str
    workflow_version: str = "1.0.0"
    stages: List[PlanStage] = Field(default_factory=list)
    validation: PlanValidationResult | None = None
    estimates: PlanEstimates = Field(default_factory=PlanEstimates)  # type: ignore[arg-type]
    required_state: List[str] = Field(default_factory=list)
    expected_outputs: List[str] = Field(default_factory=list)
    context: PlanContext = Field(default_factory=PlanContext)  # type: ignore[arg-type]
    parallel_groups: Dict[str, List[str]] = Field(default_factory=dict)
    is_fallback: bool = False
    original_query: str | None = None

    def stage(self, stage_id: str) -> PlanStage | None:
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        return None

    def stage_groups(self) -> list[tuple[int, list[PlanStage]]]:
        """Stages grouped by order, ascending; list order is kept within a group."""
        grouped: dict[int, list[PlanStage]] = {}
        for stage in self.stages:
            grouped.setdefault(stage.order, []).append(stage)
        return sorted(grouped.items())

    def iter_stage_ids(self) -> Iterator[str]:
        return (stage.stage_id for stage in self.stages)

    def with_validation(self, validation: PlanValidationResult) -> "ExecutionPlan":
        return self.model_copy(update={"validation": validation})

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> "ExecutionPlan":
        return cls.model_validate(payload)
