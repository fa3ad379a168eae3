"""JSON state snapshots — the commit hook behind every successful mutation.

The whole repository plus the escrow book is written to one JSON file
after each service operation. Writes are atomic: the snapshot goes to a
temporary file in the same directory and replaces the old one, so a
crash mid-write leaves the previous snapshot intact.

Encoding:
    datetime → ISO-8601 string
    set      → sorted list
    enum     → its value
"""

from __future__ import annotations

import json
import os
from datetime import datetime
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Optional

from gamify.market.escrow import EscrowBook
from gamify.models.goal import FinishedGoal, Goal, GoalRule, RuleKind, Task, TaskRuleMode
from gamify.models.market import (
    Bid,
    EscrowEntry,
    EscrowSource,
    EscrowState,
    MarketPlace,
    Offer,
    OfferState,
)
from gamify.models.organisation import Organisation, Role
from gamify.models.player import Level, Player, PlayerGroup, Subject
from gamify.models.present import Board, Present
from gamify.models.reward import PermanentRewardEntry, Reward, RewardKind
from gamify.persistence.repository import Repository

SCHEMA_VERSION = 1


class StateStore:
    """Atomic JSON snapshot of a repository and its escrow book.

    Usage:
        store = StateStore(Path("data/state.json"))
        store.save(repository, escrow)
        repository, escrow = store.load()
    """

    def __init__(self, storage_path: Path) -> None:
        self._path = storage_path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def save(self, repository: Repository, escrow: EscrowBook) -> None:
        """Write a full snapshot. Raises OSError if the write fails."""
        payload = {
            "schema_version": SCHEMA_VERSION,
            **encode_repository(repository),
            "escrow": [_escrow_entry(e) for e in escrow.all_entries()],
        }
        _write_atomic_json(self._path, payload)

    def load(self) -> tuple[Repository, EscrowBook]:
        """Read the snapshot. A missing file yields an empty repository."""
        repository = Repository()
        escrow = EscrowBook()
        if not self._path.exists():
            return repository, escrow
        with self._path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        version = data.get("schema_version")
        if version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported state schema version: {version!r}")
        decode_into(repository, data)
        escrow.load([_decode_escrow_entry(e) for e in data.get("escrow", [])])
        return repository, escrow


def _write_atomic_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    serialized = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)

    temp_path: Optional[Path] = None
    try:
        with NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=path.parent,
            delete=False,
            suffix=".tmp",
        ) as temp_file:
            temp_file.write(serialized)
            temp_file.flush()
            os.fsync(temp_file.fileno())
            temp_path = Path(temp_file.name)
        os.replace(temp_path, path)
    except Exception:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)
        raise


# ----------------------------------------------------------------------
# Encoding
# ----------------------------------------------------------------------

def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _subject(subject: Subject) -> dict[str, Any]:
    return {
        "subject_id": subject.subject_id,
        "org_id": subject.org_id,
        "name": subject.name,
        "coins": subject.coins,
        "points": subject.points,
        "level": {"index": subject.level.index, "label": subject.level.label},
        "completed_tasks": list(subject.completed_tasks),
        "finished_goals": [
            {
                "finished_id": fg.finished_id,
                "goal_id": fg.goal_id,
                "subject_id": fg.subject_id,
                "subject_kind": fg.subject_kind,
                "finished_utc": _ts(fg.finished_utc),
            }
            for fg in subject.finished_goals
        ],
        "permanent_rewards": [
            {
                "reward_id": r.reward_id,
                "kind": r.kind.value,
                "name": r.name,
                "awarded_utc": _ts(r.awarded_utc),
                "goal_id": r.goal_id,
            }
            for r in subject.permanent_rewards
        ],
    }


def _escrow_entry(entry: EscrowEntry) -> dict[str, Any]:
    return {
        "entry_id": entry.entry_id,
        "offer_id": entry.offer_id,
        "owner_id": entry.owner_id,
        "amount": entry.amount,
        "source": entry.source.value,
        "bid_id": entry.bid_id,
        "state": entry.state.value,
        "held_utc": _ts(entry.held_utc),
        "settled_utc": _ts(entry.settled_utc),
    }


def encode_repository(repo: Repository) -> dict[str, Any]:
    """Plain-JSON view of every entity in the repository."""
    return {
        "organisations": [
            {"org_id": o.org_id, "name": o.name, "api_key": o.api_key}
            for o in list(repo.organisations.values())
        ],
        "roles": [
            {"role_id": r.role_id, "org_id": r.org_id, "name": r.name}
            for r in list(repo.roles.values())
        ],
        "players": [
            {**_subject(p), "role_ids": sorted(p.role_ids), "email": p.email}
            for p in list(repo.players.values())
        ],
        "groups": [
            {**_subject(g), "player_ids": list(g.player_ids)}
            for g in list(repo.groups.values())
        ],
        "tasks": [
            {
                "task_id": t.task_id,
                "org_id": t.org_id,
                "name": t.name,
                "tradeable": t.tradeable,
                "description": t.description,
                "role_ids": sorted(t.role_ids),
            }
            for t in list(repo.tasks.values())
        ],
        "rules": [
            {
                "rule_id": r.rule_id,
                "org_id": r.org_id,
                "kind": r.kind.value,
                "name": r.name,
                "description": r.description,
                "task_ids": list(r.task_ids),
                "mode": r.mode.value,
                "points_threshold": r.points_threshold,
            }
            for r in list(repo.rules.values())
        ],
        "rewards": [
            {
                "reward_id": r.reward_id,
                "org_id": r.org_id,
                "kind": r.kind.value,
                "name": r.name,
                "amount": r.amount,
                "description": r.description,
            }
            for r in list(repo.rewards.values())
        ],
        "goals": [
            {
                "goal_id": g.goal_id,
                "org_id": g.org_id,
                "name": g.name,
                "rule_id": g.rule_id,
                "reward_ids": list(g.reward_ids),
                "role_ids": sorted(g.role_ids),
                "repeatable": g.repeatable,
                "group_goal": g.group_goal,
            }
            for g in list(repo.goals.values())
        ],
        "marketplaces": [
            {"market_id": m.market_id, "org_id": m.org_id, "offer_ids": list(m.offer_ids)}
            for m in list(repo.marketplaces.values())
        ],
        "offers": [
            {
                "offer_id": o.offer_id,
                "market_id": o.market_id,
                "org_id": o.org_id,
                "task_id": o.task_id,
                "creator_id": o.creator_id,
                "initial_prize": o.initial_prize,
                "prize": o.prize,
                "name": o.name,
                "state": o.state.value,
                "created_utc": _ts(o.created_utc),
                "end_date": _ts(o.end_date),
                "deadline": _ts(o.deadline),
                "completed_by": o.completed_by,
                "closed_utc": _ts(o.closed_utc),
            }
            for o in list(repo.offers.values())
        ],
        "bids": [
            {
                "bid_id": b.bid_id,
                "offer_id": b.offer_id,
                "bidder_id": b.bidder_id,
                "amount": b.amount,
                "created_utc": _ts(b.created_utc),
            }
            for b in list(repo.bids.values())
        ],
        "presents": [
            {
                "present_id": p.present_id,
                "org_id": p.org_id,
                "sender_id": p.sender_id,
                "message": p.message,
                "sent_utc": _ts(p.sent_utc),
            }
            for p in list(repo.presents.values())
        ],
        "boards": [
            {
                "owner_id": b.owner_id,
                "org_id": b.org_id,
                "inbox": list(b.inbox),
                "current": list(b.current),
                "archive": list(b.archive),
            }
            for b in list(repo.boards.values())
        ],
    }


# ----------------------------------------------------------------------
# Decoding
# ----------------------------------------------------------------------

def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _subject_fields(d: dict[str, Any]) -> dict[str, Any]:
    return {
        "subject_id": d["subject_id"],
        "org_id": d["org_id"],
        "name": d["name"],
        "coins": d["coins"],
        "points": d["points"],
        "level": Level(**d.get("level", {})),
        "completed_tasks": list(d.get("completed_tasks", [])),
        "finished_goals": [
            FinishedGoal(
                finished_id=fg["finished_id"],
                goal_id=fg["goal_id"],
                subject_id=fg["subject_id"],
                subject_kind=fg["subject_kind"],
                finished_utc=_dt(fg["finished_utc"]),
            )
            for fg in d.get("finished_goals", [])
        ],
        "permanent_rewards": [
            PermanentRewardEntry(
                reward_id=r["reward_id"],
                kind=RewardKind(r["kind"]),
                name=r["name"],
                awarded_utc=_dt(r["awarded_utc"]),
                goal_id=r.get("goal_id"),
            )
            for r in d.get("permanent_rewards", [])
        ],
    }


def _decode_escrow_entry(d: dict[str, Any]) -> EscrowEntry:
    return EscrowEntry(
        entry_id=d["entry_id"],
        offer_id=d["offer_id"],
        owner_id=d["owner_id"],
        amount=d["amount"],
        source=EscrowSource(d["source"]),
        bid_id=d.get("bid_id"),
        state=EscrowState(d["state"]),
        held_utc=_dt(d.get("held_utc")),
        settled_utc=_dt(d.get("settled_utc")),
    )


def decode_into(repo: Repository, data: dict[str, Any]) -> None:
    """Populate an empty repository from encode_repository() output.

    Boards are restored after players, overwriting the empty board that
    add_player() creates.
    """
    for d in data.get("organisations", []):
        repo.add_organisation(Organisation(**d))
    for d in data.get("roles", []):
        repo.add_role(Role(**d))
    for d in data.get("players", []):
        repo.add_player(Player(
            **_subject_fields(d),
            role_ids=set(d.get("role_ids", [])),
            email=d.get("email"),
        ))
    for d in data.get("groups", []):
        repo.add_group(PlayerGroup(
            **_subject_fields(d), player_ids=list(d.get("player_ids", [])),
        ))
    for d in data.get("tasks", []):
        repo.add_task(Task(**{**d, "role_ids": set(d.get("role_ids", []))}))
    for d in data.get("rules", []):
        repo.add_rule(GoalRule(
            rule_id=d["rule_id"],
            org_id=d["org_id"],
            kind=RuleKind(d["kind"]),
            name=d.get("name", ""),
            description=d.get("description", ""),
            task_ids=tuple(d.get("task_ids", [])),
            mode=TaskRuleMode(d.get("mode", TaskRuleMode.ALL.value)),
            points_threshold=d.get("points_threshold", 0),
        ))
    for d in data.get("rewards", []):
        repo.add_reward(Reward(**{**d, "kind": RewardKind(d["kind"])}))
    for d in data.get("goals", []):
        repo.add_goal(Goal(**{**d, "role_ids": set(d.get("role_ids", []))}))
    for d in data.get("marketplaces", []):
        repo.add_marketplace(MarketPlace(**d))
    for d in data.get("offers", []):
        repo.add_offer(Offer(
            offer_id=d["offer_id"],
            market_id=d["market_id"],
            org_id=d["org_id"],
            task_id=d["task_id"],
            creator_id=d["creator_id"],
            initial_prize=d["initial_prize"],
            prize=d["prize"],
            name=d.get("name", ""),
            state=OfferState(d["state"]),
            created_utc=_dt(d.get("created_utc")),
            end_date=_dt(d.get("end_date")),
            deadline=_dt(d.get("deadline")),
            completed_by=d.get("completed_by"),
            closed_utc=_dt(d.get("closed_utc")),
        ))
    for d in data.get("bids", []):
        repo.add_bid(Bid(**{**d, "created_utc": _dt(d.get("created_utc"))}))
    for d in data.get("presents", []):
        repo.add_present(Present(**{**d, "sent_utc": _dt(d.get("sent_utc"))}))
    for d in data.get("boards", []):
        repo.boards[d["owner_id"]] = Board(**d)
