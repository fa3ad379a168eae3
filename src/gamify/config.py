"""Engine configuration — loaded from config/engine.json with .env overrides.

Usage:
    config = EngineConfig.from_config_dir(Path("config"))
    config = EngineConfig.from_env(config)

Fail-closed: unknown keys and wrongly typed values raise ValueError
rather than being silently ignored.
"""

from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

# env var → (field name, parser name)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "GAMIFY_REEVALUATE_POINTS_ON_REWARD": ("reevaluate_points_goals_on_reward", "bool"),
    "GAMIFY_REEVALUATE_POINTS_ON_PAYOUT": ("reevaluate_points_goals_on_payout", "bool"),
    "GAMIFY_DEDUPE_PERMANENT_REWARDS": ("dedupe_permanent_rewards", "bool"),
    "GAMIFY_DEFAULT_QUERY_COUNT": ("default_query_count", "int"),
    "GAMIFY_DATA_DIR": ("data_dir", "str"),
}


@dataclass(frozen=True)
class EngineConfig:
    """Tunable engine behaviour.

    reevaluate_points_goals_on_reward:
        Re-run PointsRule goals whenever settlement awards points.
    reevaluate_points_goals_on_payout:
        Also re-run PointsRule goals for a marketplace completer after
        the prize payout (payouts are coins only, so this is off by default).
    dedupe_permanent_rewards:
        Skip a badge/achievement whose reward id the subject already holds.
    default_query_count:
        N for top-N offer queries when the caller passes none.
    data_dir:
        Where the CLI keeps state.json and events.jsonl.
    """
    reevaluate_points_goals_on_reward: bool = True
    reevaluate_points_goals_on_payout: bool = False
    dedupe_permanent_rewards: bool = False
    default_query_count: int = 10
    data_dir: str = "data"

    CONFIG_FILENAME = "engine.json"

    def __post_init__(self) -> None:
        if self.default_query_count <= 0:
            raise ValueError(
                f"default_query_count must be positive, got {self.default_query_count}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Build a config from a plain dict, validating keys and types."""
        fields = {f.name: f for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - set(fields))
        if unknown:
            raise ValueError(f"Unknown engine config keys: {', '.join(unknown)}")
        for key, value in data.items():
            expected = type(getattr(cls(), key))
            # bool is a subclass of int; keep them apart
            if expected is int and isinstance(value, bool):
                raise ValueError(f"Config key '{key}' must be int, got bool")
            if not isinstance(value, expected):
                raise ValueError(
                    f"Config key '{key}' must be {expected.__name__}, "
                    f"got {type(value).__name__}"
                )
        return cls(**data)

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> EngineConfig:
        """Load engine.json from a config directory (defaults if absent)."""
        path = config_dir / cls.CONFIG_FILENAME
        if not path.exists():
            return cls()
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_env(
        cls,
        base: Optional[EngineConfig] = None,
        dotenv_path: Optional[Path] = None,
    ) -> EngineConfig:
        """Apply GAMIFY_* environment overrides (after loading .env) to base."""
        load_dotenv(dotenv_path)
        config = base or cls()
        changes: dict[str, Any] = {}
        for env_name, (field_name, kind) in _ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            changes[field_name] = _parse(env_name, raw, kind)
        if not changes:
            return config
        return dataclasses.replace(config, **changes)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def _parse(name: str, raw: str, kind: str) -> Any:
    value = raw.strip()
    if kind == "bool":
        lowered = value.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"{name} must be a boolean, got {raw!r}")
    if kind == "int":
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    return value
