from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator

__all__ = [
    "TaskCatalog",
    "TaskDefinition",
    "TaskExecutionStats",
    "TaskInvoker",
    "TaskType",
    "normalize_identifier",
]

_IDENTIFIER_PATTERN = re.compile(r"[\s\-/]+")

TaskInvoker = Callable[[dict[str, Any]], Any]


def normalize_identifier(value: str) -> str:
    """Return the lookup key used for task and capability ids."""
    if not isinstance(value, str):
        raise TypeError("Identifier must be a string")
    return _IDENTIFIER_PATTERN.sub("_", value.strip()).lower()


class TaskType(str, Enum):
    SUPERVISOR = "supervisor"
    SPECIALIST = "specialist"
    COORDINATOR = "coordinator"
    FINALIZER = "finalizer"


@dataclass(slots=True)
class TaskExecutionStats:
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    avg_execution_time_ms: float = 0.0
    last_executed_at: datetime | None = None

    @property
    def success_rate(self) -> float:
        if not self.total_executions:
            return 0.0
        return self.successful_executions / self.total_executions


@dataclass(slots=True)
class TaskDefinition:
    task_id: str
    name: str
    task_type: TaskType = TaskType.SPECIALIST
    enabled: bool = True
    required_capabilities: list[str] = field(default_factory=list)
    optional_capabilities: list[str] = field(default_factory=list)
    produced_fields: list[str] = field(default_factory=list)
    required_fields: list[str] = field(default_factory=list)
    optional_fields: list[str] = field(default_factory=list)
    estimated_duration_ms: int | None = None
    llm_max_tokens: int | None = None
    dependency_type: str = "generic"
    description: str = ""
    invoke: TaskInvoker | None = None
    stats: TaskExecutionStats = field(default_factory=TaskExecutionStats)

    @property
    def uses_llm(self) -> bool:
        return bool(self.llm_max_tokens)


class TaskCatalog:
    """Registry of executable tasks with their declared inputs, outputs and capabilities."""

    def __init__(self, tasks: Iterable[TaskDefinition] | None = None) -> None:
        self._tasks: Dict[str, TaskDefinition] = {}
        for task in tasks or ():
            self.register(task)

    def register(self, task: TaskDefinition) -> None:
        key = normalize_identifier(task.task_id)
        if not key:
            raise ValueError("Task id must not be empty")
        overlap = set(task.produced_fields) & set(task.required_fields)
        if overlap:
            raise ValueError(f"Task '{task.task_id}' both requires and produces: {', '.join(sorted(overlap))}")
        self._tasks[key] = task

    def unregister(self, task_id: str) -> None:
        self._tasks.pop(normalize_identifier(task_id), None)

    def get(self, task_id: str) -> TaskDefinition | None:
        return self._tasks.get(normalize_identifier(task_id))

    def has(self, task_id: str) -> bool:
        return normalize_identifier(task_id) in self._tasks

    def is_enabled(self, task_id: str) -> bool:
        task = self.get(task_id)
        return task is not None and task.enabled

    def list(self, *, enabled_only: bool = False) -> list[str]:
        return sorted(task.task_id for task in self._tasks.values() if task.enabled or not enabled_only)

    def search(
        self,
        *,
        task_type: TaskType | str | None = None,
        capability: str | None = None,
        produces: str | None = None,
        enabled_only: bool = True,
    ) -> list[TaskDefinition]:
        matches: list[TaskDefinition] = []
        for task in self._tasks.values():
            if enabled_only and not task.enabled:
                continue
            if task_type is not None and task.task_type != TaskType(task_type):
                continue
            if capability is not None and capability not in (*task.required_capabilities, *task.optional_capabilities):
                continue
            if produces is not None and produces not in task.produced_fields:
                continue
            matches.append(task)
        return sorted(matches, key=lambda item: item.task_id)

    def produced_fields(self) -> set[str]:
        fields: set[str] = set()
        for task in self._tasks.values():
            fields.update(task.produced_fields)
        return fields

    def record_execution(self, task_id: str, *, success: bool, duration_ms: float) -> None:
        """Fold one observed execution into the task's running statistics."""
        task = self.get(task_id)
        if task is None:
            return
        stats = task.stats
        previous_total = stats.total_executions
        stats.total_executions += 1
        if success:
            stats.successful_executions += 1
        else:
            stats.failed_executions += 1
        stats.avg_execution_time_ms = (
            stats.avg_execution_time_ms * previous_total + max(0.0, duration_ms)
        ) / stats.total_executions
        stats.last_executed_at = datetime.now(timezone.utc)

    def __iter__(self) -> Iterator[TaskDefinition]:
        return iter(list(self._tasks.values()))

    def __len__(self) -> int:
        return len(self._tasks)

    def clear(self) -> None:
        self._tasks.clear()
