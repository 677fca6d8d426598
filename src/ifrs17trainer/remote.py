"""Remote progress and leaderboard backend for authenticated identities."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace
from typing import Any, Protocol, cast

from supabase import Client, create_client

from .engine import ModuleResult
from .models import Leaderboard, LeaderboardEntry

logger = logging.getLogger(__name__)

PROGRESS_TABLE = "game_progress"
COMPLETIONS_TABLE = "module_completions"
OVERALL_LEADERBOARD_VIEW = "overall_leaderboard"
MODULE_LEADERBOARD_VIEW = "module_leaderboard"
SAVE_PROGRESS_RPC = "save_game_progress"
SUBMIT_SCORE_RPC = "submit_module_score"
LEADERBOARD_RPC = "get_leaderboard_with_position"

# Snapshot keys renamed in the backend's progress payload; the rest keep their names.
PROGRESS_KEYS = {
    "current_module_id": "currentModule",
    "current_position": "currentQuestion",
    "perfect_module_count": "perfectModulesCount",
    "completed_module_ids": "completedModules",
    "unlocked_module_ids": "unlockedModules",
    "power_ups": "powerUps",
}


class RemoteStore(Protocol):
    """Backend calls made by the gateway; implementations may raise on any failure."""

    def load_snapshot(self, user_id: str) -> dict[str, object] | None: ...

    def save_snapshot(self, user_id: str, payload: dict[str, object]) -> None: ...

    def clear_snapshot(self, user_id: str) -> None: ...

    def submit_module_result(self, user_id: str, result: ModuleResult, module_title: str) -> None: ...

    def overall_leaderboard(self, user_id: str | None, limit: int) -> Leaderboard: ...

    def module_leaderboard(self, module_id: int, user_id: str | None, limit: int) -> Leaderboard: ...

    def user_rank(self, user_id: str) -> int | None: ...

    def module_performance(self, user_id: str) -> list[LeaderboardEntry]: ...


class SupabaseRemoteStore:
    """Remote store on a Supabase project (`game_progress` table, leaderboard views and RPCs)."""

    def __init__(self, client: Client) -> None:
        self.client = client

    def load_snapshot(self, user_id: str) -> dict[str, object] | None:
        """Return the user's progress row, or None when no row exists.

        The row's flat columns (`total_score`, `completed_modules`, ...) are
        understood by `state.restore`.
        """
        result = self.client.table(PROGRESS_TABLE).select("*").eq("user_id", user_id).limit(1).execute()
        rows = cast(list[Mapping[str, Any]], result.data or [])
        if not rows or not isinstance(rows[0], Mapping):
            return None
        return dict(rows[0])

    def save_snapshot(self, user_id: str, payload: dict[str, object]) -> None:
        """Upsert the full snapshot through the save RPC."""
        self.client.rpc(SAVE_PROGRESS_RPC, {"p_user_id": user_id, "p_progress": progress_data(payload)}).execute()

    def clear_snapshot(self, user_id: str) -> None:
        """Delete stored progress and per-module completions."""
        self.client.table(PROGRESS_TABLE).delete().eq("user_id", user_id).execute()
        self.client.table(COMPLETIONS_TABLE).delete().eq("user_id", user_id).execute()

    def submit_module_result(self, user_id: str, result: ModuleResult, module_title: str) -> None:
        """Record one module completion for the leaderboard."""
        self.client.rpc(
            SUBMIT_SCORE_RPC,
            {
                "p_user_id": user_id,
                "p_module_id": result.module_id,
                "p_module_name": module_title,
                "p_score": result.score,
                "p_perfect": result.perfect,
                "p_time": result.elapsed_seconds,
                "p_questions_answered": result.questions_answered,
                "p_questions_correct": result.questions_correct,
            },
        ).execute()

    def overall_leaderboard(self, user_id: str | None, limit: int) -> Leaderboard:
        """Top players by total score; signed-in players also get their own position."""
        if user_id is None:
            result = self.client.table(OVERALL_LEADERBOARD_VIEW).select("*").limit(limit).execute()
            return Leaderboard(entries=_entries(result.data))
        result = self.client.rpc(LEADERBOARD_RPC, {"p_user_id": user_id, "p_limit": limit}).execute()
        data = result.data
        if isinstance(data, list) and data and isinstance(data[0], Mapping):
            data = data[0]
        if not isinstance(data, Mapping):
            return Leaderboard()
        body = cast(Mapping[str, Any], data)
        position = body.get("userPosition")
        return Leaderboard(
            entries=_entries(body.get("leaderboard")),
            user_position=_entry(position, 0) if isinstance(position, Mapping) else None,
        )

    def module_leaderboard(self, module_id: int, user_id: str | None, limit: int) -> Leaderboard:
        """Best module scores, ties broken by the faster completion."""
        result = (
            self.client.table(MODULE_LEADERBOARD_VIEW)
            .select("*")
            .eq("module_id", module_id)
            .order("score", desc=True)
            .order("completion_time")
            .limit(limit)
            .execute()
        )
        entries = tuple(replace(entry, rank=index + 1) for index, entry in enumerate(_entries(result.data)))
        own = next((entry for entry in entries if user_id is not None and entry.user_id == user_id), None)
        return Leaderboard(entries=entries, user_position=own)

    def user_rank(self, user_id: str) -> int | None:
        result = self.client.table(OVERALL_LEADERBOARD_VIEW).select("rank").eq("user_id", user_id).limit(1).execute()
        rows = cast(list[Mapping[str, Any]], result.data or [])
        if not rows:
            return None
        rank = rows[0].get("rank")
        return rank if isinstance(rank, int) and not isinstance(rank, bool) and rank > 0 else None

    def module_performance(self, user_id: str) -> list[LeaderboardEntry]:
        """The user's leaderboard row for every module they completed, by module id."""
        result = (
            self.client.table(MODULE_LEADERBOARD_VIEW)
            .select("*")
            .eq("user_id", user_id)
            .order("module_id")
            .execute()
        )
        return list(_entries(result.data))


def progress_data(payload: Mapping[str, object]) -> dict[str, object]:
    """Translate a snapshot into the backend's camelCase progress payload."""
    data: dict[str, object] = {}
    for key, value in payload.items():
        if key == "answered_questions" and isinstance(value, Mapping):
            data["answeredQuestions"] = {
                answer_key: {
                    "answered": record.get("answered", True),
                    "selectedAnswer": record.get("selected_index"),
                    "wasCorrect": record.get("was_correct", False),
                }
                for answer_key, record in cast(Mapping[str, Any], value).items()
                if isinstance(record, Mapping)
            }
        elif key == "shuffled_views" and isinstance(value, Mapping):
            data["shuffledQuestions"] = {
                module_key: [{"originalIndex": index} for index in indices]
                for module_key, indices in cast(Mapping[str, Any], value).items()
                if isinstance(indices, list)
            }
        else:
            data[PROGRESS_KEYS.get(key, key)] = value
    return data


def _entries(rows: object) -> tuple[LeaderboardEntry, ...]:
    if not isinstance(rows, list):
        return ()
    return tuple(_entry(row, index) for index, row in enumerate(cast(list[object], rows)) if isinstance(row, Mapping))


def _entry(raw: object, index: int) -> LeaderboardEntry:
    row = cast(Mapping[str, Any], raw)
    rank = row.get("rank")
    module_id = row.get("module_id")
    completion_time = row.get("completion_time")
    score = row.get("total_score")
    if score is None:
        score = row.get("score")
    return LeaderboardEntry(
        rank=rank if isinstance(rank, int) and not isinstance(rank, bool) else index + 1,
        user_id=str(row.get("user_id") or ""),
        user_name=str(row.get("user_name") or row.get("name") or "Anonymous"),
        score=score if isinstance(score, int) and not isinstance(score, bool) else 0,
        module_id=module_id if isinstance(module_id, int) and not isinstance(module_id, bool) else None,
        perfect=bool(row.get("perfect_completion", False)),
        completion_time=completion_time if isinstance(completion_time, int) else None,
    )


def create_remote_store(url: str | None, key: str | None) -> SupabaseRemoteStore | None:
    """Build a Supabase-backed store, or None when credentials are missing or the client cannot be created."""
    if not url or not key:
        logger.info("Supabase credentials not configured; running with local progress only")
        return None
    try:
        return SupabaseRemoteStore(create_client(url, key))
    except Exception:
        logger.exception("Could not create Supabase client for %s", url)
        return None
