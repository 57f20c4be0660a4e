"""
model-canary CLI: command-line interface for canary rollout configs.

Usage:
    model-canary version
    model-canary info
    model-canary validate deployment.yaml
    model-canary plan deployment.yaml
"""

import argparse
import json
import sys
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from model_canary import __version__
from model_canary.delivery.decision import DecisionEngineConfig, next_canary_percentage
from model_canary.delivery.models import CanaryDeploymentConfig, RolloutStrategyType
from model_canary.providers import list_providers

_MAX_PLAN_STEPS = 1000


def _load_config(path: str) -> CanaryDeploymentConfig:
    return CanaryDeploymentConfig.from_yaml(path)


def _report_invalid(path: str, exc: Exception) -> int:
    print(f"Invalid deployment config: {path}", file=sys.stderr)
    if isinstance(exc, ValidationError):
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ())) or "config"
            print(f"  {loc}: {err.get('msg', '')}", file=sys.stderr)
    else:
        print(f"  {exc}", file=sys.stderr)
    return 1


def plan_schedule(
    config: CanaryDeploymentConfig, engine_config: Optional[DecisionEngineConfig] = None
) -> List[Dict[str, float]]:
    """Canary share at each evaluation, assuming every evaluation proceeds."""
    window = config.success_criteria.evaluation_window
    strategy = config.rollout_strategy
    current = config.traffic_split.canary
    schedule = [{"minute": 0.0, "canary": current}]

    for step in range(1, _MAX_PLAN_STEPS + 1):
        proposed = next_canary_percentage(strategy, current, engine_config)
        if proposed is None:
            break
        current = proposed
        schedule.append({"minute": step * window, "canary": current})
    return schedule


def cli(args: Optional[List[str]] = None) -> int:
    """Main CLI entry point. Returns exit code."""
    parser = argparse.ArgumentParser(
        prog="model-canary",
        description="Canary rollout control and evaluation for inference models",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("version", help="Show version")
    subparsers.add_parser("info", help="Show system info")

    validate_parser = subparsers.add_parser("validate", help="Validate a deployment config")
    validate_parser.add_argument("config", help="Path to a deployment YAML file")

    plan_parser = subparsers.add_parser("plan", help="Show the traffic schedule of a config")
    plan_parser.add_argument("config", help="Path to a deployment YAML file")
    plan_parser.add_argument("--json", action="store_true", help="Print the schedule as JSON")

    parsed = parser.parse_args(args)

    if parsed.command == "version":
        print(f"model-canary {__version__}")
        return 0

    if parsed.command == "info":
        info: Dict[str, Any] = {
            "name": "model-canary",
            "version": __version__,
            "components": ["lifecycle", "router", "evaluator", "decision-engine", "evals"],
            "strategies": [s.value for s in RolloutStrategyType],
            "scorers": list_providers(),
        }
        print(json.dumps(info, indent=2))
        return 0

    if parsed.command in ("validate", "plan"):
        try:
            config = _load_config(parsed.config)
        except (ValidationError, yaml.YAMLError, OSError, ValueError) as e:
            return _report_invalid(parsed.config, e)

        if parsed.command == "validate":
            print(
                f"OK: {config.name} ({config.production_model_id} -> {config.canary_model_id}, "
                f"{config.rollout_strategy.type.value}, "
                f"{config.traffic_split.production:g}/{config.traffic_split.canary:g})"
            )
            return 0

        schedule = plan_schedule(config)
        if parsed.json:
            print(json.dumps(schedule, indent=2))
            return 0

        strategy = config.rollout_strategy
        print(f"{config.name}: {strategy.type.value} rollout to {strategy.max_traffic_percentage:g}%")
        for point in schedule:
            print(f"  t+{point['minute']:g}m  canary {point['canary']:g}%")
        if strategy.type == RolloutStrategyType.MANUAL:
            print("  traffic held until an operator changes the split")
        else:
            print(f"  complete once at maximum and {strategy.duration:g} minutes have elapsed")
        return 0

    parser.print_help()
    return 1


def main() -> None:
    sys.exit(cli())


if __name__ == "__main__":
    main()
