#!/usr/bin/env python3
"""Engine invariant checks against config/engine.json and data/state.json."""

from pathlib import Path

from gamify.invariants import check as run_checks

ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "config"
STATE_PATH = ROOT / "data" / "state.json"


def check() -> int:
    errors = run_checks(CONFIG_DIR, STATE_PATH)
    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(check())
