"""Engine invariant checks against the config file and a state snapshot.

Checks:
- engine.json loads (known keys, correct types, positive query count).
- Every OPEN offer's held escrow equals its prize; closed offers hold nothing.
- No player or group holds a negative coin balance.
- Every bid and escrow entry points at an offer that exists.
- No (goal, subject) pair has a repeated FinishedGoal unless the goal
  is repeatable and not points-based.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from gamify.config import EngineConfig
from gamify.market.escrow import EscrowBook
from gamify.models.goal import RuleKind
from gamify.persistence.repository import Repository
from gamify.persistence.state_store import StateStore


def check_config(config_dir: Path, errors: list[str]) -> None:
    try:
        EngineConfig.from_config_dir(config_dir)
    except (ValueError, json.JSONDecodeError) as e:
        errors.append(f"Invalid engine config: {e}")


def check_state(repo: Repository, escrow: EscrowBook, errors: list[str]) -> None:
    """Validate coin conservation and ledger consistency of a loaded state."""
    for offer in sorted(repo.offers.values(), key=lambda o: o.offer_id):
        errors.extend(escrow.verify(offer))

    for subject in sorted(
        [*repo.players.values(), *repo.groups.values()], key=lambda s: s.subject_id,
    ):
        if subject.coins < 0:
            errors.append(
                f"{subject.kind.value} {subject.subject_id} has negative coins: {subject.coins}"
            )
        seen: set[str] = set()
        for record in subject.finished_goals:
            goal = repo.goals.get(record.goal_id)
            if goal is None:
                errors.append(
                    f"{subject.subject_id} holds a FinishedGoal for unknown goal {record.goal_id}"
                )
                continue
            if record.goal_id in seen:
                rule = repo.rules.get(goal.rule_id)
                if not goal.repeatable or (rule is not None and rule.kind == RuleKind.POINTS):
                    errors.append(
                        f"{subject.subject_id} finished one-shot goal {goal.goal_id} more than once"
                    )
            seen.add(record.goal_id)

    for bid in sorted(repo.bids.values(), key=lambda b: b.bid_id):
        if bid.offer_id not in repo.offers:
            errors.append(f"Bid {bid.bid_id} references unknown offer {bid.offer_id}")
    for entry in escrow.all_entries():
        if entry.offer_id not in repo.offers:
            errors.append(
                f"Escrow entry {entry.entry_id} references unknown offer {entry.offer_id}"
            )


def check(config_dir: Path, state_path: Optional[Path] = None) -> list[str]:
    """Run every check. Returns the list of violations (empty when clean)."""
    errors: list[str] = []
    check_config(config_dir, errors)
    if state_path is not None and state_path.exists():
        try:
            repo, escrow = StateStore(state_path).load()
        except (ValueError, KeyError, json.JSONDecodeError) as e:
            errors.append(f"Unreadable state snapshot {state_path}: {e}")
            return errors
        check_state(repo, escrow, errors)
    return errors
