from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from petsos.errors import InvalidArgument

SYNC_MODES = ("push", "poll")


@dataclass(frozen=True)
class Settings:
    staleness_seconds: float = 60.0
    match_radius_meters: float = 10_000.0
    match_limit: int = 20
    sync_mode: str = "push"
    case_poll_seconds: float = 3.0
    nearby_poll_seconds: float = 5.0
    db_path: str = ""

    def __post_init__(self) -> None:
        if self.staleness_seconds <= 0:
            raise InvalidArgument("PETSOS_STALENESS_SECONDS must be positive")
        if self.match_radius_meters <= 0:
            raise InvalidArgument("PETSOS_MATCH_RADIUS_METERS must be positive")
        if self.match_limit <= 0:
            raise InvalidArgument("PETSOS_MATCH_LIMIT must be positive")
        if self.sync_mode not in SYNC_MODES:
            raise InvalidArgument(f"PETSOS_SYNC_MODE must be one of {', '.join(SYNC_MODES)}, got {self.sync_mode!r}")
        if self.case_poll_seconds <= 0 or self.nearby_poll_seconds <= 0:
            raise InvalidArgument("poll intervals must be positive")


def _number(env: Mapping[str, str], name: str, default: str, cast=float):
    raw = env.get(name, default)
    try:
        return cast(raw)
    except ValueError as exc:
        raise InvalidArgument(f"{name} must be a number, got {raw!r}") from exc


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    return Settings(
        staleness_seconds=_number(env, "PETSOS_STALENESS_SECONDS", "60"),
        match_radius_meters=_number(env, "PETSOS_MATCH_RADIUS_METERS", "10000"),
        match_limit=_number(env, "PETSOS_MATCH_LIMIT", "20", cast=int),
        sync_mode=env.get("PETSOS_SYNC_MODE", "push").strip().lower(),
        case_poll_seconds=_number(env, "PETSOS_CASE_POLL_SECONDS", "3"),
        nearby_poll_seconds=_number(env, "PETSOS_NEARBY_POLL_SECONDS", "5"),
        db_path=env.get("PETSOS_DB_PATH", ""),
    )
