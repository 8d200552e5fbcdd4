from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Iterator

from .tasks import normalize_identifier

__all__ = ["CapabilityCatalog", "CapabilityDefinition", "CostClass"]


class CostClass(str, Enum):
    FREE = "free"
    API_CALL = "api_call"
    EXPENSIVE = "expensive"


@dataclass(slots=True, frozen=True)
class CapabilityDefinition:
    capability_id: str
    name: str = ""
    cost_class: CostClass = CostClass.FREE
    deprecated: bool = False
    replaced_by: str | None = None
    description: str = ""

    @property
    def is_billable(self) -> bool:
        return self.cost_class is not CostClass.FREE


class CapabilityCatalog:
    """In-memory lookup of the tools/capabilities tasks may declare."""

    def __init__(self, capabilities: Iterable[CapabilityDefinition] | None = None) -> None:
        self._capabilities: Dict[str, CapabilityDefinition] = {}
        for capability in capabilities or ():
            self.register(capability)

    def register(self, capability: CapabilityDefinition) -> None:
        key = normalize_identifier(capability.capability_id)
        if not key:
            raise ValueError("Capability id must not be empty")
        self._capabilities[key] = capability

    def unregister(self, capability_id: str) -> None:
        self._capabilities.pop(normalize_identifier(capability_id), None)

    def get(self, capability_id: str) -> CapabilityDefinition | None:
        return self._capabilities.get(normalize_identifier(capability_id))

    def has(self, capability_id: str) -> bool:
        return normalize_identifier(capability_id) in self._capabilities

    def cost_class(self, capability_id: str) -> CostClass:
        capability = self.get(capability_id)
        return capability.cost_class if capability is not None else CostClass.FREE

    def list(self) -> list[str]:
        return sorted(capability.capability_id for capability in self._capabilities.values())

    def __iter__(self) -> Iterator[CapabilityDefinition]:
        return iter(list(self._capabilities.values()))

    def __len__(self) -> int:
        return len(self._capabilities)

    def clear(self) -> None:
        self._capabilities.clear()
