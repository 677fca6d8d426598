"""Runtime settings for the trainer."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_DB_PATH = Path(".ifrs17trainer") / "progress.db"


@dataclass(frozen=True)
class GameConfig:
    """Tunable gameplay delays, guest policy and storage locations."""

    deferred_auth: bool = True
    guest_module_ids: frozenset[int] = field(default_factory=lambda: frozenset({0}))
    advance_delay: float | None = 7.0
    auth_prompt_delay: float = 3.0
    autosave_interval: float = 30.0
    tick_interval: float = 1.0
    db_path: Path = DEFAULT_DB_PATH
    supabase_url: str | None = None
    supabase_key: str | None = None


def load_config(environ: Mapping[str, str] | None = None) -> GameConfig:
    """Build config from environment variables, reading a `.env` file first when using the process environment."""
    if environ is None:
        load_dotenv()
        environ = os.environ

    defaults = GameConfig()
    advance_raw = environ.get("IFRS17_ADVANCE_DELAY")
    advance_delay = defaults.advance_delay
    if advance_raw is not None:
        advance_delay = None if advance_raw.strip().lower() in {"", "none", "manual"} else _float(advance_raw, 7.0)

    return GameConfig(
        deferred_auth=_flag(environ.get("IFRS17_DEFERRED_AUTH"), defaults.deferred_auth),
        guest_module_ids=_id_set(environ.get("IFRS17_GUEST_MODULES"), defaults.guest_module_ids),
        advance_delay=advance_delay,
        auth_prompt_delay=_float(environ.get("IFRS17_AUTH_PROMPT_DELAY"), defaults.auth_prompt_delay),
        autosave_interval=_float(environ.get("IFRS17_AUTOSAVE_INTERVAL"), defaults.autosave_interval),
        tick_interval=_float(environ.get("IFRS17_TICK_INTERVAL"), defaults.tick_interval),
        db_path=Path(environ["IFRS17_DB_PATH"]) if environ.get("IFRS17_DB_PATH") else defaults.db_path,
        supabase_url=environ.get("SUPABASE_URL") or None,
        supabase_key=environ.get("SUPABASE_KEY") or None,
    )


def _flag(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _float(raw: str | None, default: float) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def _id_set(raw: str | None, default: frozenset[int]) -> frozenset[int]:
    if raw is None:
        return default
    ids: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if part.isdigit():
            ids.add(int(part))
    return frozenset(ids) if ids else default
