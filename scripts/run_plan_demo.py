"""CLI that runs a query through the plan pipeline against stubbed maritime tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any

from planflow.catalog import (
    CapabilityCatalog,
    CapabilityDefinition,
    CostClass,
    TaskCatalog,
    TaskDefinition,
    TaskType,
    TemplateRegistry,
    default_templates,
)
from planflow.core.config import get_settings
from planflow.core.logging import configure_logging
from planflow.orchestration import ExecutionOptions, GenerationOptions, PlanRunner


async def _route(state: dict[str, Any]) -> dict[str, Any]:
    await asyncio.sleep(0.05)
    return {"route_data": {"distance_nm": 8_300, "waypoints": 42}}


async def _weather(state: dict[str, Any]) -> dict[str, Any]:
    await asyncio.sleep(0.05)
    return {"weather_forecast": {"max_wave_m": 2.5, "route_nm": state["route_data"]["distance_nm"]}}


async def _compliance(state: dict[str, Any]) -> dict[str, Any]:
    await asyncio.sleep(0.05)
    return {"compliance_data": {"eca_segments": 2}}


async def _bunker(state: dict[str, Any]) -> dict[str, Any]:
    await asyncio.sleep(0.05)
    return {"bunker_analysis": {"recommended_port": "SGSIN", "quantity_mt": 1_200}}


async def _finalize(state: dict[str, Any]) -> dict[str, Any]:
    produced = sorted(key for key in state if key.endswith(("_data", "_forecast", "_analysis")))
    return {"final_recommendation": f"Plan complete using {', '.join(produced)}"}


def build_demo_catalogs() -> tuple[TaskCatalog, CapabilityCatalog]:
    capabilities = CapabilityCatalog(
        [
            CapabilityDefinition("calculate_route", cost_class=CostClass.API_CALL),
            CapabilityDefinition("fetch_marine_weather", cost_class=CostClass.API_CALL),
            CapabilityDefinition("check_eca_zones", cost_class=CostClass.FREE),
            CapabilityDefinition("fetch_fuel_prices", cost_class=CostClass.EXPENSIVE),
        ]
    )
    tasks = TaskCatalog(
        [
            TaskDefinition(
                task_id="route_agent",
                name="Route agent",
                required_capabilities=["calculate_route"],
                produced_fields=["route_data"],
                dependency_type="route",
                invoke=_route,
            ),
            TaskDefinition(
                task_id="weather_agent",
                name="Weather agent",
                required_capabilities=["fetch_marine_weather"],
                required_fields=["route_data"],
                produced_fields=["weather_forecast"],
                dependency_type="weather",
                invoke=_weather,
            ),
            TaskDefinition(
                task_id="compliance_agent",
                name="Compliance agent",
                required_capabilities=["check_eca_zones"],
                required_fields=["route_data"],
                produced_fields=["compliance_data"],
                invoke=_compliance,
            ),
            TaskDefinition(
                task_id="bunker_agent",
                name="Bunker agent",
                required_capabilities=["fetch_fuel_prices"],
                required_fields=["route_data"],
                optional_fields=["weather_forecast"],
                produced_fields=["bunker_analysis"],
                dependency_type="price",
                invoke=_bunker,
            ),
            TaskDefinition(
                task_id="finalize",
                name="Finalizer",
                task_type=TaskType.FINALIZER,
                produced_fields=["final_recommendation"],
                llm_max_tokens=2_000,
                invoke=_finalize,
            ),
        ]
    )
    return tasks, capabilities


def _load_templates(path: Path | None) -> TemplateRegistry:
    if path is None:
        return TemplateRegistry(default_templates())
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Template configuration must be an object with a 'templates' list")
    return TemplateRegistry.from_mapping(payload)


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    configure_logging(args.log_level or settings.observability.log_level, json_output=settings.observability.json_logs)
    tasks, capabilities = build_demo_catalogs()
    runner = PlanRunner.from_settings(
        tasks=tasks,
        capabilities=capabilities,
        templates=_load_templates(args.templates),
        settings=settings,
    )
    outcome = await runner.run(
        args.query,
        {"messages": [args.query]},
        generation=GenerationOptions(exclude_tasks=tuple(args.exclude), force_regenerate=True),
        execution=ExecutionOptions(continue_on_error=args.continue_on_error, enable_parallel=not args.sequential),
    )
    if args.show_plan:
        print(json.dumps(outcome.plan.to_wire(), indent=2))
    if not outcome.executed:
        print("Plan rejected:")
        for error in outcome.validation.errors:
            print(f"  - {error}")
        return 2
    assert outcome.result is not None
    if runner.monitor is not None:
        print(runner.monitor.generate_report(outcome.plan, outcome.result))
    return 0 if outcome.success else 1


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("query", help="Natural-language query to plan and execute")
    parser.add_argument("--templates", type=Path, default=None, help="JSON file with workflow templates")
    parser.add_argument("--exclude", action="append", default=[], help="Task id to leave out of the plan")
    parser.add_argument("--continue-on-error", action="store_true", help="Keep going after a required stage fails")
    parser.add_argument("--sequential", action="store_true", help="Disable concurrent stage groups")
    parser.add_argument("--show-plan", action="store_true", help="Print the plan in its wire format")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    raise SystemExit(asyncio.run(_run(parser.parse_args())))


if __name__ == "__main__":
    main()
