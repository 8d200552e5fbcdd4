from .capabilities import CapabilityCatalog, CapabilityDefinition, CostClass
from .tasks import TaskCatalog, TaskDefinition, TaskExecutionStats, TaskType
from .templates import TemplateRegistry, TemplateStage, WorkflowTemplate, default_templates

__all__ = [
    "CapabilityCatalog",
    "CapabilityDefinition",
    "CostClass",
    "TaskCatalog",
    "TaskDefinition",
    "TaskExecutionStats",
    "TaskType",
    "TemplateRegistry",
    "TemplateStage",
    "WorkflowTemplate",
    "default_templates",
]
