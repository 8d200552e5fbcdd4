"""
Orchestration Package

Plan-first execution of dependency-ordered tasks:
- Plan generation from workflow templates and the task catalog
- Plan validation (structure, cycles, ordering, inputs)
- Group-by-group execution with bounded parallelism
- Plan and stage metrics
"""

from .cache import PlanCache
from .classifier import KeywordQueryClassifier, QueryClassification, QueryClassifier, QueryType
from .engine import ExecutionOptions, WorkflowEngine, is_complete, next_stage
from .generator import GenerationOptions, PlanGenerator
from .monitor import AggregateMetrics, PlanMetrics, PlanMonitor, StageMetrics
from .runner import PlanRunner, PlanRunOutcome
from .validator import PlanValidator

__all__ = [
    "AggregateMetrics",
    "ExecutionOptions",
    "GenerationOptions",
    "KeywordQueryClassifier",
    "PlanCache",
    "PlanGenerator",
    "PlanMetrics",
    "PlanMonitor",
    "PlanRunOutcome",
    "PlanRunner",
    "PlanValidator",
    "QueryClassification",
    "QueryClassifier",
    "QueryType",
    "StageMetrics",
    "WorkflowEngine",
    "is_complete",
    "next_stage",
]
