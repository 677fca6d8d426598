"""Progression state machine: scoring, streaks, leveling, unlocking and power-ups.

Every transition mutates the draft state it is given and returns a small
result object, or None when the event is not valid in the current state
(duplicate clicks, locked modules and the like). Callers run transitions on
`ProgressionState.copy()` and commit the draft only once the call returns.
"""

from __future__ import annotations

import random
from collections.abc import Collection, Mapping
from dataclasses import dataclass, replace

from .achievements import Achievement, evaluate
from .models import AnswerRecord, Module, Question, ShuffledModuleView
from .powerups import ELIMINATE, HINT, HINT_TEXT, POWER_UP_KINDS, SKIP, eliminate_options
from .shuffler import build_module_view
from .state import (
    POINTS_PER_COMBO_STEP,
    XP_PER_CORRECT,
    XP_PER_LEVEL,
    AttemptState,
    PendingCompletion,
    ProgressionState,
    initial_state,
)

START_OK = "ok"
START_UNKNOWN = "unknown"
START_AUTH_REQUIRED = "auth_required"
START_LOCKED = "locked"
START_COMPLETED = "completed"
START_ACTIVE = "active"
START_AWAITING_COMPLETION = "awaiting_completion"


@dataclass(frozen=True)
class AnswerOutcome:
    """Result of one submitted answer."""

    module_id: int
    position: int
    selected_index: int
    correct_index: int
    correct: bool
    points: int
    leveled_up: bool
    is_last_question: bool
    explanation: str


@dataclass(frozen=True)
class ModuleResult:
    """Summary of one completed module attempt."""

    module_id: int
    score: int
    perfect: bool
    elapsed_seconds: int | None
    questions_answered: int
    questions_correct: int
    unlocked_module_id: int | None
    pending_auth: bool


@dataclass(frozen=True)
class PowerUpOutcome:
    """Result of using one power-up."""

    kind: str
    remaining: int
    hint: str | None = None
    eliminated: tuple[int, ...] = ()
    skipped_position: int | None = None
    module_result: ModuleResult | None = None


class ProgressionEngine:
    """Applies progression rules to a `ProgressionState` for a fixed question bank."""

    def __init__(
        self,
        modules: Mapping[int, Module],
        *,
        rng: random.Random | None = None,
        deferred_auth: bool = True,
        guest_module_ids: Collection[int] = frozenset({0}),
    ) -> None:
        self.modules = modules
        self.rng = rng if rng is not None else random.Random()
        self.deferred_auth = deferred_auth
        self.guest_module_ids = frozenset(guest_module_ids)

    def guest_gated(self, module_id: int, *, is_guest: bool) -> bool:
        """Return whether a guest must sign up before playing `module_id`."""
        return is_guest and self.deferred_auth and module_id not in self.guest_module_ids

    def current_view(self, state: ProgressionState) -> ShuffledModuleView | None:
        if state.attempt is None:
            return None
        return state.shuffled_views.get(state.attempt.module_id)

    def current_question(self, state: ProgressionState) -> Question | None:
        """Return the question at the current shuffled position of the active attempt."""
        view = self.current_view(state)
        if view is None or state.current_position >= len(view):
            return None
        return view.question_at(state.current_position)

    def awaiting_advance(self, state: ProgressionState) -> bool:
        """Return whether the current question is answered but the attempt has not moved on yet."""
        if state.attempt is None:
            return False
        return (state.attempt.module_id, state.current_position) in state.answered_questions

    def start_check(self, state: ProgressionState, module_id: int, *, is_guest: bool, restart: bool = False) -> str:
        """Classify whether `module_id` may be started now."""
        if module_id not in self.modules:
            return START_UNKNOWN
        if self.guest_gated(module_id, is_guest=is_guest):
            return START_AUTH_REQUIRED
        if module_id not in state.unlocked_module_ids:
            return START_LOCKED
        if module_id in state.completed_module_ids:
            return START_COMPLETED
        attempt = state.attempt
        if attempt is not None:
            view = state.shuffled_views.get(attempt.module_id)
            on_last = view is not None and state.current_position >= len(view) - 1
            if on_last and self.awaiting_advance(state):
                return START_AWAITING_COMPLETION
            if attempt.module_id == module_id and not restart:
                return START_ACTIVE
        return START_OK

    def start_module(
        self,
        state: ProgressionState,
        module_id: int,
        *,
        is_guest: bool,
        started_at: str,
        restart: bool = False,
    ) -> str:
        """Begin a fresh attempt at `module_id`; returns the start check result."""
        check = self.start_check(state, module_id, is_guest=is_guest, restart=restart)
        if check != START_OK:
            return check

        for key in [key for key in state.answered_questions if key[0] == module_id]:
            del state.answered_questions[key]
        state.shuffled_views[module_id] = build_module_view(self.modules[module_id], self.rng)
        state.attempt = AttemptState(module_id=module_id, module_score=0, perfect=True, started_at=started_at)
        state.power_ups = state.power_ups.refill()
        state.current_module_id = module_id
        state.current_position = 0
        return START_OK

    def submit_answer(self, state: ProgressionState, selected_index: int) -> AnswerOutcome | None:
        """Score an answer to the current question."""
        attempt = state.attempt
        view = self.current_view(state)
        if attempt is None or view is None or state.current_position >= len(view):
            return None
        key = (attempt.module_id, state.current_position)
        if key in state.answered_questions:
            return None
        question = view.question_at(state.current_position)
        if not 0 <= selected_index < len(question.options):
            return None

        correct = selected_index == question.correct_index
        state.answered_questions[key] = AnswerRecord(answered=True, selected_index=selected_index, was_correct=correct)

        points = 0
        leveled_up = False
        if correct:
            points = POINTS_PER_COMBO_STEP * (state.combo + 1)
            state.score += points
            state.streak += 1
            state.combo += 1
            state.max_combo = max(state.max_combo, state.combo)
            state.attempt = replace(attempt, module_score=attempt.module_score + points)
            leveled_up = self._award_xp(state)
        else:
            self._break_streak(state)

        return AnswerOutcome(
            module_id=attempt.module_id,
            position=state.current_position,
            selected_index=selected_index,
            correct_index=question.correct_index,
            correct=correct,
            points=points,
            leveled_up=leveled_up,
            is_last_question=state.current_position == len(view) - 1,
            explanation=question.explanation,
        )

    def advance(
        self, state: ProgressionState, *, is_guest: bool, elapsed_seconds: int | None = None
    ) -> ModuleResult | int | None:
        """Move past an answered question.

        Returns the new position, a `ModuleResult` when the last question was
        answered, or None when the current question is still open.
        """
        view = self.current_view(state)
        if view is None or not self.awaiting_advance(state):
            return None
        if state.current_position < len(view) - 1:
            state.current_position += 1
            return state.current_position
        return self.complete_module(state, is_guest=is_guest, elapsed_seconds=elapsed_seconds)

    def complete_module(
        self, state: ProgressionState, *, is_guest: bool, elapsed_seconds: int | None = None
    ) -> ModuleResult | None:
        """Record completion of the active attempt and unlock the next module."""
        attempt = state.attempt
        if attempt is None or attempt.module_id in state.completed_module_ids:
            return None
        module_id = attempt.module_id
        answers = state.module_answers(module_id)

        if attempt.perfect:
            state.perfect_module_count += 1
        state.completed_module_ids.add(module_id)
        state.attempt = None

        next_id = module_id + 1
        unlocked: int | None = None
        pending_auth = False
        if next_id in self.modules and next_id not in state.unlocked_module_ids:
            if self.guest_gated(next_id, is_guest=is_guest):
                pending_auth = True
                state.pending_completion = PendingCompletion(
                    module_id=module_id,
                    score=attempt.module_score,
                    perfect=attempt.perfect,
                    elapsed_seconds=elapsed_seconds,
                )
            else:
                state.unlocked_module_ids.add(next_id)
                unlocked = next_id

        return ModuleResult(
            module_id=module_id,
            score=attempt.module_score,
            perfect=attempt.perfect,
            elapsed_seconds=elapsed_seconds,
            questions_answered=sum(1 for record in answers.values() if record.answered),
            questions_correct=sum(1 for record in answers.values() if record.was_correct),
            unlocked_module_id=unlocked,
            pending_auth=pending_auth,
        )

    def use_power_up(
        self,
        state: ProgressionState,
        kind: str,
        *,
        is_guest: bool,
        elapsed_seconds: int | None = None,
    ) -> PowerUpOutcome | None:
        """Spend one power-up on the current open question."""
        if kind not in POWER_UP_KINDS or not state.power_ups.can_use(kind):
            return None
        attempt = state.attempt
        question = self.current_question(state)
        if attempt is None or question is None or self.awaiting_advance(state):
            return None

        state.power_ups = state.power_ups.consume(kind)
        remaining = state.power_ups.remaining(kind)
        if kind == HINT:
            return PowerUpOutcome(kind=kind, remaining=remaining, hint=HINT_TEXT)
        if kind == ELIMINATE:
            hidden = eliminate_options(len(question.options), question.correct_index, self.rng)
            return PowerUpOutcome(kind=kind, remaining=remaining, eliminated=hidden)

        # skip
        position = state.current_position
        state.answered_questions[(attempt.module_id, position)] = AnswerRecord(
            answered=True, selected_index=None, was_correct=False
        )
        self._break_streak(state)
        advanced = self.advance(state, is_guest=is_guest, elapsed_seconds=elapsed_seconds)
        module_result = advanced if isinstance(advanced, ModuleResult) else None
        return PowerUpOutcome(kind=kind, remaining=remaining, skipped_position=position, module_result=module_result)

    def evaluate_achievements(self, state: ProgressionState) -> Achievement | None:
        """Award and return the first newly earned achievement, if any."""
        earned = evaluate(state.achievements, state.stats())
        if not earned:
            return None
        state.achievements.append(earned[0].id)
        return earned[0]

    def reset(self) -> ProgressionState:
        return initial_state()

    def _award_xp(self, state: ProgressionState) -> bool:
        """Add XP for a correct answer; at most one level-up per answer."""
        state.xp += XP_PER_CORRECT
        threshold = state.level * XP_PER_LEVEL
        if state.xp >= threshold:
            state.xp = state.xp % threshold
            state.level += 1
            return True
        return False

    def _break_streak(self, state: ProgressionState) -> None:
        state.streak = 0
        state.combo = 0
        if state.attempt is not None:
            state.attempt = replace(state.attempt, perfect=False)
