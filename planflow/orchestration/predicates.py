"""Evaluation of the data-only skip/continue condition grammar."""

from __future__ import annotations

from typing import Any, Mapping

from ..schemas.plan import ConditionSet

__all__ = ["check_holds", "conditions_hold", "failing_checks", "field_present"]


def field_present(state: Mapping[str, Any], field_name: str) -> bool:
    return state.get(field_name) is not None


def check_holds(state: Mapping[str, Any], field_name: str, check: Any) -> bool:
    if isinstance(check, Mapping):
        if "exists" in check:
            return field_present(state, field_name) is bool(check["exists"])
        if "equals" in check:
            return field_name in state and state[field_name] == check["equals"]
        return False
    return field_name in state and state[field_name] == check


def conditions_hold(conditions: ConditionSet | None, state: Mapping[str, Any]) -> bool:
    """True when every configured check passes; an empty set never holds."""
    if not conditions:
        return False
    return all(check_holds(state, name, check) for name, check in conditions.state_checks.items())


def failing_checks(conditions: ConditionSet | None, state: Mapping[str, Any]) -> list[str]:
    if not conditions:
        return []
    return [name for name, check in conditions.state_checks.items() if not check_holds(state, name, check)]
