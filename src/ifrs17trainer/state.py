"""Progression state aggregate and its persisted snapshot form."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import cast

from .achievements import ACHIEVEMENTS_BY_ID, AchievementStats
from .models import AnswerRecord, Module, ShuffledModuleView
from .powerups import PowerUpLedger
from .shuffler import view_from_indices

SNAPSHOT_VERSION = 1
XP_PER_CORRECT = 25
XP_PER_LEVEL = 100
POINTS_PER_COMBO_STEP = 10

AnswerKey = tuple[int, int]


@dataclass(frozen=True)
class AttemptState:
    """Counters for the module attempt in progress."""

    module_id: int
    module_score: int = 0
    perfect: bool = True
    started_at: str = ""


@dataclass(frozen=True)
class PendingCompletion:
    """Guest module completion waiting for sign-up before it unlocks anything."""

    module_id: int
    score: int
    perfect: bool
    elapsed_seconds: int | None


@dataclass
class ProgressionState:
    """All progression data for one identity.

    Mutated only by `engine` transitions, which work on `copy()` and commit the
    result as a whole.
    """

    score: int = 0
    streak: int = 0
    combo: int = 0
    max_combo: int = 0
    level: int = 1
    xp: int = 0
    current_module_id: int = 0
    current_position: int = 0
    unlocked_module_ids: set[int] = field(default_factory=lambda: {0})
    completed_module_ids: set[int] = field(default_factory=set)
    perfect_module_count: int = 0
    answered_questions: dict[AnswerKey, AnswerRecord] = field(default_factory=dict)
    achievements: list[int] = field(default_factory=list)
    power_ups: PowerUpLedger = field(default_factory=PowerUpLedger)
    shuffled_views: dict[int, ShuffledModuleView] = field(default_factory=dict)
    attempt: AttemptState | None = None
    pending_completion: PendingCompletion | None = None

    def copy(self) -> ProgressionState:
        """Return an independent draft; nested values are immutable so containers are copied shallowly."""
        return replace(
            self,
            unlocked_module_ids=set(self.unlocked_module_ids),
            completed_module_ids=set(self.completed_module_ids),
            answered_questions=dict(self.answered_questions),
            achievements=list(self.achievements),
            shuffled_views=dict(self.shuffled_views),
        )

    def module_answers(self, module_id: int) -> dict[int, AnswerRecord]:
        """Return answer records for one module keyed by shuffled position."""
        return {position: record for (mid, position), record in self.answered_questions.items() if mid == module_id}

    def stats(self) -> AchievementStats:
        return AchievementStats(
            score=self.score,
            streak=self.streak,
            level=self.level,
            completed_modules=len(self.completed_module_ids),
            perfect_modules=self.perfect_module_count,
            max_combo=self.max_combo,
        )


def initial_state() -> ProgressionState:
    """Return a fresh progression state."""
    return ProgressionState()


def snapshot(state: ProgressionState) -> dict[str, object]:
    """Serialize state to a JSON-ready dict."""
    return {
        "snapshot_version": SNAPSHOT_VERSION,
        "saved_at": datetime.now(UTC).isoformat(),
        "score": state.score,
        "streak": state.streak,
        "combo": state.combo,
        "max_combo": state.max_combo,
        "level": state.level,
        "xp": state.xp,
        "current_module_id": state.current_module_id,
        "current_position": state.current_position,
        "unlocked_module_ids": sorted(state.unlocked_module_ids),
        "completed_module_ids": sorted(state.completed_module_ids),
        "perfect_module_count": state.perfect_module_count,
        "answered_questions": {
            f"{module_id}-{position}": {
                "answered": record.answered,
                "selected_index": record.selected_index,
                "was_correct": record.was_correct,
            }
            for (module_id, position), record in sorted(state.answered_questions.items())
        },
        "achievements": list(state.achievements),
        "power_ups": state.power_ups.to_dict(),
        "shuffled_views": {str(module_id): view.original_indices() for module_id, view in state.shuffled_views.items()},
        "attempt": None
        if state.attempt is None
        else {
            "module_id": state.attempt.module_id,
            "module_score": state.attempt.module_score,
            "perfect": state.attempt.perfect,
            "started_at": state.attempt.started_at,
        },
        "pending_completion": None
        if state.pending_completion is None
        else {
            "module_id": state.pending_completion.module_id,
            "score": state.pending_completion.score,
            "perfect": state.pending_completion.perfect,
            "elapsed_seconds": state.pending_completion.elapsed_seconds,
        },
    }


def restore(raw: Mapping[str, object], modules: Mapping[int, Module]) -> ProgressionState:
    """Build state from a persisted snapshot, filling defaults and dropping stale data.

    Accepts the current snake_case layout as well as the older camelCase
    browser-storage layout. Unknown modules, out-of-range positions and
    unknown achievement ids are discarded.
    """
    version = _coerce_int(raw.get("snapshot_version", 0), default=0) or 0
    if version > SNAPSHOT_VERSION:
        raise ValueError(f"Snapshot version {version} is newer than supported {SNAPSHOT_VERSION}.")

    state = initial_state()
    state.score = _non_negative(_pick(raw, "score", "total_score"))
    state.streak = _non_negative(_pick(raw, "streak"))
    state.combo = _non_negative(_pick(raw, "combo"))
    state.max_combo = max(_non_negative(_pick(raw, "max_combo", "maxCombo")), state.combo)
    state.level = max(1, _non_negative(_pick(raw, "level"), default=1))
    state.xp = _non_negative(_pick(raw, "xp"))
    state.perfect_module_count = _non_negative(
        _pick(raw, "perfect_module_count", "perfectModuleCount", "perfectModulesCount", "perfect_modules_count")
    )

    state.completed_module_ids = _module_id_set(
        _pick(raw, "completed_module_ids", "completedModuleIds", "completedModules", "completed_modules"), modules
    )
    state.unlocked_module_ids = _module_id_set(
        _pick(raw, "unlocked_module_ids", "unlockedModuleIds", "unlockedModules", "unlocked_modules"), modules
    )
    state.unlocked_module_ids.add(0)
    for module_id in state.completed_module_ids:
        if module_id + 1 in modules:
            state.unlocked_module_ids.add(module_id + 1)

    state.answered_questions = _answer_records(_pick(raw, "answered_questions", "answeredQuestions"), modules)
    state.achievements = _achievement_ids(_pick(raw, "achievements"))
    power_ups_raw = _pick(raw, "power_ups", "powerUps")
    state.power_ups = PowerUpLedger.from_dict(
        cast(Mapping[str, object], power_ups_raw) if isinstance(power_ups_raw, Mapping) else None
    )
    state.shuffled_views = _shuffled_views(
        _pick(raw, "shuffled_views", "shuffledQuestions", "shuffled_questions"), modules
    )

    current_module = _coerce_int(_pick(raw, "current_module_id", "currentModule", "current_module"), default=0)
    state.current_module_id = current_module if current_module in modules else 0
    position = _non_negative(_pick(raw, "current_position", "currentQuestion", "current_question"))
    question_count = len(modules[state.current_module_id].questions) if state.current_module_id in modules else 0
    state.current_position = position if position < question_count else 0

    state.attempt = _attempt(raw.get("attempt"), state, modules)
    state.pending_completion = _pending_completion(raw.get("pending_completion"), modules)
    return state


def _pick(raw: Mapping[str, object], *keys: str) -> object:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _non_negative(value: object, default: int = 0) -> int:
    coerced = _coerce_int(value, default=default)
    return max(0, default if coerced is None else coerced)


def _module_id_set(raw: object, modules: Mapping[int, Module]) -> set[int]:
    if not isinstance(raw, list | tuple | set):
        return set()
    result: set[int] = set()
    for item in cast(list[object], list(raw)):
        module_id = _coerce_int(item)
        if module_id is not None and module_id in modules:
            result.add(module_id)
    return result


def _answer_records(raw: object, modules: Mapping[int, Module]) -> dict[AnswerKey, AnswerRecord]:
    if not isinstance(raw, Mapping):
        return {}
    records: dict[AnswerKey, AnswerRecord] = {}
    for key, value in cast(Mapping[object, object], raw).items():
        parts = str(key).split("-")
        if len(parts) != 2 or not isinstance(value, Mapping):
            continue
        module_id = _coerce_int(parts[0])
        position = _coerce_int(parts[1])
        if module_id is None or position is None or module_id not in modules:
            continue
        if not 0 <= position < len(modules[module_id].questions):
            continue
        row = cast(Mapping[str, object], value)
        selected = _coerce_int(_pick(row, "selected_index", "selectedAnswer"))
        records[(module_id, position)] = AnswerRecord(
            answered=bool(row.get("answered", True)),
            selected_index=selected,
            was_correct=selected is not None and bool(_pick(row, "was_correct", "wasCorrect")),
        )
    return records


def _achievement_ids(raw: object) -> list[int]:
    if not isinstance(raw, list | tuple):
        return []
    ids: list[int] = []
    for item in cast(list[object], list(raw)):
        if isinstance(item, Mapping):
            item = cast(Mapping[str, object], item).get("id")
        achievement_id = _coerce_int(item)
        if achievement_id is not None and achievement_id in ACHIEVEMENTS_BY_ID and achievement_id not in ids:
            ids.append(achievement_id)
    return ids


def _shuffled_views(raw: object, modules: Mapping[int, Module]) -> dict[int, ShuffledModuleView]:
    if not isinstance(raw, Mapping):
        return {}
    views: dict[int, ShuffledModuleView] = {}
    for key, value in cast(Mapping[object, object], raw).items():
        module_id = _coerce_int(key)
        if module_id is None or module_id not in modules or not isinstance(value, list):
            continue
        indices: list[int] = []
        for item in cast(list[object], value):
            if isinstance(item, Mapping):
                item = cast(Mapping[str, object], item).get("originalIndex")
            index = _coerce_int(item)
            if index is None:
                break
            indices.append(index)
        else:
            view = view_from_indices(modules[module_id], indices)
            if view is not None:
                views[module_id] = view
    return views


def _attempt(raw: object, state: ProgressionState, modules: Mapping[int, Module]) -> AttemptState | None:
    if not isinstance(raw, Mapping):
        return None
    row = cast(Mapping[str, object], raw)
    module_id = _coerce_int(row.get("module_id"))
    if module_id is None or module_id not in modules or module_id in state.completed_module_ids:
        return None
    if module_id not in state.shuffled_views or module_id != state.current_module_id:
        return None
    started_at = row.get("started_at")
    return AttemptState(
        module_id=module_id,
        module_score=_non_negative(row.get("module_score")),
        perfect=bool(row.get("perfect", True)),
        started_at=started_at if isinstance(started_at, str) else "",
    )


def _pending_completion(raw: object, modules: Mapping[int, Module]) -> PendingCompletion | None:
    if not isinstance(raw, Mapping):
        return None
    row = cast(Mapping[str, object], raw)
    module_id = _coerce_int(row.get("module_id"))
    if module_id is None or module_id not in modules:
        return None
    return PendingCompletion(
        module_id=module_id,
        score=_non_negative(row.get("score")),
        perfect=bool(row.get("perfect", False)),
        elapsed_seconds=_coerce_int(row.get("elapsed_seconds")),
    )


def _coerce_int(value: object, default: int | None = None) -> int | None:
    """Coerce a persisted value to int."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        # inf and nan have no int value
        return int(value) if math.isfinite(value) else default
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default
