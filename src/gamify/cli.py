"""Gamify CLI — command-line interface for the gamification engine.

Usage:
    python -m gamify.cli status
    python -m gamify.cli run-scenario --file scenario.json --strict
    python -m gamify.cli verify-log
    python -m gamify.cli check-invariants
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from gamify.config import EngineConfig
from gamify.invariants import check as check_invariants
from gamify.persistence.event_log import EventLog
from gamify.persistence.state_store import StateStore
from gamify.service import GamificationService, ServiceResult

DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"

EVENTS_FILENAME = "events.jsonl"
STATE_FILENAME = "state.json"

SCENARIO_ACTIONS = (
    "complete_task",
    "create_offer",
    "place_bid",
    "complete_offer",
    "cancel_offer",
    "apply_rewards",
)


def _load_config(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig.from_env(EngineConfig.from_config_dir(args.config))


def _data_dir(args: argparse.Namespace, config: EngineConfig) -> Path:
    return args.data_dir if args.data_dir is not None else Path(config.data_dir)


def _make_service(config: EngineConfig, data_dir: Path) -> GamificationService:
    """Create a GamificationService with durable persistence."""
    data_dir.mkdir(parents=True, exist_ok=True)
    return GamificationService(
        config,
        event_log=EventLog(storage_path=data_dir / EVENTS_FILENAME),
        state_store=StateStore(storage_path=data_dir / STATE_FILENAME),
    )


def _result_dict(result: ServiceResult) -> dict[str, Any]:
    return {
        "success": result.success,
        "errors": list(result.errors),
        "error_kind": result.error_kind,
        "data": result.data,
    }


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def cmd_status(args: argparse.Namespace) -> int:
    config = _load_config(args)
    data_dir = _data_dir(args, config)
    events_path = data_dir / EVENTS_FILENAME
    event_count = EventLog(storage_path=events_path).count if events_path.exists() else 0
    status: dict[str, Any] = {"config": config.to_dict(), "events": event_count}
    state_path = data_dir / STATE_FILENAME
    if state_path.exists():
        status["engine"] = GamificationService(
            config, state_store=StateStore(storage_path=state_path),
        ).status()
    print(json.dumps(status, indent=2))
    return 0


def _setup_scenario(
    service: GamificationService, scenario: dict[str, Any],
) -> tuple[str, str, list[str]]:
    """Register every entity a scenario declares. Returns (org, market, errors)."""
    org = scenario["organisation"]
    org_id = org["org_id"]
    results = [service.register_organisation(org_id, org.get("name", org_id))]
    for role in scenario.get("roles", []):
        results.append(service.register_role(org_id, role["role_id"], role.get("name", "")))
    for p in scenario.get("players", []):
        results.append(service.register_player(
            org_id, p["player_id"], p.get("name", p["player_id"]),
            coins=p.get("coins", 0), points=p.get("points", 0),
            role_ids=p.get("role_ids"), email=p.get("email"),
        ))
    for g in scenario.get("groups", []):
        results.append(service.create_group(
            org_id, g.get("name", g["group_id"]), g.get("player_ids"), group_id=g["group_id"],
        ))
    for t in scenario.get("tasks", []):
        results.append(service.create_task(
            org_id, t["task_id"], t.get("name", t["task_id"]),
            tradeable=t.get("tradeable", False), role_ids=t.get("role_ids"),
        ))
    for r in scenario.get("rules", []):
        if r.get("kind") == "points":
            results.append(service.create_points_rule(org_id, r["rule_id"], r["threshold"]))
        else:
            results.append(service.create_task_rule(
                org_id, r["rule_id"], r["task_ids"], mode=r.get("mode", "all"),
            ))
    for rw in scenario.get("rewards", []):
        results.append(service.create_reward(
            org_id, rw["reward_id"], rw["kind"],
            amount=rw.get("amount", 0), name=rw.get("name", ""),
        ))
    for g in scenario.get("goals", []):
        results.append(service.create_goal(
            org_id, g["goal_id"], g.get("name", g["goal_id"]), g["rule_id"],
            reward_ids=g.get("reward_ids"), role_ids=g.get("role_ids"),
            repeatable=g.get("repeatable", True), group_goal=g.get("group_goal", False),
        ))
    market_id = scenario.get("marketplace", f"{org_id}-market")
    results.append(service.create_marketplace(org_id, market_id))
    errors = [err for r in results if not r.success for err in r.errors]
    return org_id, market_id, errors


def _run_action(
    service: GamificationService,
    org_id: str,
    market_id: str,
    action: dict[str, Any],
    offer_refs: dict[str, str],
) -> ServiceResult:
    name = action.get("action")
    now = _dt(action.get("now"))
    if name == "complete_task":
        return service.complete_task(
            org_id, action["task_id"], action["subject_id"],
            action.get("subject_kind", "player"), now=now,
        )
    if name == "apply_rewards":
        return service.apply_rewards(
            org_id, action["reward_ids"], action["subject_id"],
            action.get("subject_kind", "player"), now=now,
        )
    if name == "create_offer":
        result = service.create_offer(
            org_id, action.get("market_id", market_id), action["task_id"],
            action["creator_id"], action["prize"], name=action.get("name", ""),
            end_date=_dt(action.get("end_date")), deadline=_dt(action.get("deadline")),
            now=now,
        )
        if result.success and "ref" in action:
            offer_refs[action["ref"]] = result.data["offer_id"]
        return result

    offer_id = offer_refs.get(action.get("offer", ""), action.get("offer", ""))
    if name == "place_bid":
        return service.place_bid(org_id, offer_id, action["bidder_id"], action["amount"], now=now)
    if name == "complete_offer":
        return service.complete_offer(org_id, offer_id, action["completer_id"], now=now)
    if name == "cancel_offer":
        return service.cancel_offer(org_id, offer_id, now=now)
    return ServiceResult(
        success=False,
        errors=[f"Unknown action: {name!r}. Allowed: [{', '.join(SCENARIO_ACTIONS)}]"],
        error_kind="invalid_state",
    )


def cmd_run_scenario(args: argparse.Namespace) -> int:
    """Run a JSON scenario against a fresh service in the data directory."""
    config = _load_config(args)
    data_dir = _data_dir(args, config)
    with args.file.open("r", encoding="utf-8") as f:
        scenario = json.load(f)

    # A scenario always starts from an empty engine.
    for filename in (EVENTS_FILENAME, STATE_FILENAME):
        (data_dir / filename).unlink(missing_ok=True)
    service = _make_service(config, data_dir)

    org_id, market_id, setup_errors = _setup_scenario(service, scenario)
    if setup_errors:
        print(json.dumps({"setup_errors": setup_errors}, indent=2))
        return 1

    offer_refs: dict[str, str] = {}
    results = []
    for index, action in enumerate(scenario.get("actions", [])):
        result = _run_action(service, org_id, market_id, action, offer_refs)
        results.append({"index": index, "action": action.get("action"), **_result_dict(result)})

    print(json.dumps({"results": results, "status": service.status()}, indent=2))
    if args.strict and any(not r["success"] for r in results):
        return 1
    return 0


def cmd_verify_log(args: argparse.Namespace) -> int:
    """Reload the event log, re-verifying every hash."""
    config = _load_config(args)
    path = _data_dir(args, config) / EVENTS_FILENAME
    if not path.exists():
        print(f"No event log at {path}")
        return 0
    try:
        log = EventLog(storage_path=path)
    except (ValueError, KeyError, json.JSONDecodeError) as e:
        print(f"Event log verification failed: {e}", file=sys.stderr)
        return 1
    print(f"Event log verified: {log.count} events")
    for kind, n in log.kind_counts().items():
        print(f"  {kind}: {n}")
    return 0


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Run engine invariant checks."""
    try:
        config = _load_config(args)
    except ValueError as e:
        print("Invariant check failed:")
        print(f"- {e}")
        return 1
    errors = check_invariants(args.config, _data_dir(args, config) / STATE_FILENAME)
    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1
    print("Invariant check passed.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gamify",
        description="Gamify — goal, reward and marketplace engine CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory holding engine.json (default: config/)",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Directory for state.json and events.jsonl (default: config data_dir)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show configuration and engine status")

    # run-scenario
    p_run = sub.add_parser("run-scenario", help="Run a JSON scenario on a fresh engine")
    p_run.add_argument("--file", type=Path, required=True, help="Scenario JSON file")
    p_run.add_argument(
        "--strict", action="store_true", help="Exit non-zero if any action fails",
    )

    # verify-log
    sub.add_parser("verify-log", help="Verify event log hashes")

    # check-invariants
    sub.add_parser("check-invariants", help="Run engine invariant checks")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "status": cmd_status,
        "run-scenario": cmd_run_scenario,
        "verify-log": cmd_verify_log,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
