"""Application service for one running quiz session."""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import cast

from . import __version__
from .config import GameConfig
from .content_loader import load_modules
from .engine import (
    START_AUTH_REQUIRED,
    START_OK,
    AnswerOutcome,
    ModuleResult,
    PowerUpOutcome,
    ProgressionEngine,
)
from .identity import (
    AuthenticatedIdentity,
    GuestIdentity,
    GuestRecordStore,
    Identity,
    IdentityBoundary,
    resolve_guest,
)
from .models import Leaderboard, LeaderboardEntry, Module, Question
from .persistence import PersistenceGateway, SnapshotWriter
from .progress import open_store
from .remote import create_remote_store
from .scheduling import AttemptTimer, Clock, Handle, PeriodicTask, Scheduler, ThreadingScheduler
from .state import SNAPSHOT_VERSION, PendingCompletion, ProgressionState, initial_state, restore, snapshot
from .telemetry import (
    ACHIEVEMENT_UNLOCKED,
    AUTH_PROMPT_DISMISSED,
    AUTH_PROMPT_SHOWN,
    GUEST_INITIALIZATION_ERROR,
    GUEST_MIGRATED,
    GUEST_MIGRATION_FAILED,
    GUEST_USER_LOADED,
    MODULE_COMPLETED,
    MODULE_STARTED,
    PROGRESS_RESET,
    FanoutTelemetrySink,
    LocalTelemetryLog,
    LoggingTelemetrySink,
    TelemetrySink,
)

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1
LEADERBOARD_LIMIT = 50


@dataclass(frozen=True)
class ModuleStatus:
    """Module availability for the current identity."""

    module: Module
    unlocked: bool
    completed: bool
    gated: bool
    active: bool


@dataclass(frozen=True)
class SessionView:
    """Read-only projection of the running session."""

    identity: Identity | None
    state: ProgressionState
    elapsed_seconds: int
    auth_prompt_visible: bool
    question: Question | None
    position: int
    question_count: int
    awaiting_advance: bool


@dataclass(frozen=True)
class ProgressTransferSummary:
    """Summary emitted by progress export/import operations."""

    path: Path
    score: int
    level: int
    completed_modules: int
    answered_questions: int


class TrainingService:
    """Coordinates progression state, identity changes, timers and persistence.

    Every state operation holds one re-entrant lock, applies engine
    transitions to a copy of the state and swaps the copy in only once the
    transition succeeded.
    """

    def __init__(
        self,
        modules: Mapping[int, Module],
        gateway: PersistenceGateway,
        boundary: IdentityBoundary,
        *,
        config: GameConfig | None = None,
        scheduler: Scheduler | None = None,
        telemetry: TelemetrySink | None = None,
        writer: SnapshotWriter | None = None,
        guest_store: GuestRecordStore | None = None,
        rng: random.Random | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        """Initialize service with its collaborators; call `start()` to load the first identity."""
        self.modules = modules
        self.config = config or GameConfig()
        self.gateway = gateway
        self.boundary = boundary
        self.scheduler = scheduler or ThreadingScheduler()
        self.telemetry = telemetry or LoggingTelemetrySink()
        self.writer = writer or SnapshotWriter(gateway)
        self.guest_store = guest_store or gateway.local
        self.engine = ProgressionEngine(
            modules,
            rng=rng,
            deferred_auth=self.config.deferred_auth,
            guest_module_ids=self.config.guest_module_ids,
        )
        self.auth_prompt_visible = False

        self._lock = threading.RLock()
        self._state = initial_state()
        self._identity: Identity | None = None
        self._revision = 0
        self._saved_revision = 0
        self._session = 0
        self._started = False
        self._advance_handle: Handle | None = None
        self._prompt_handle: Handle | None = None
        self._timer = AttemptTimer(self.scheduler, clock=clock, interval=self.config.tick_interval)
        self._autosave = PeriodicTask(self.scheduler, self.config.autosave_interval, self._autosave_tick)

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def state(self) -> ProgressionState:
        """Return a copy of the committed state."""
        with self._lock:
            return self._state.copy()

    @property
    def is_guest(self) -> bool:
        return self._identity is None or self._identity.is_guest

    def start(self) -> None:
        """Subscribe to identity changes, load the current identity and begin auto-saving."""
        with self._lock:
            if self._started:
                return
            self._started = True
            self.boundary.on_identity_change(self.handle_identity_change)
            self._switch_identity(self.boundary.current_identity())
            self._autosave.start()

    def close(self) -> None:
        """Stop timers, write any unsaved state and release storage."""
        with self._lock:
            self._autosave.stop()
            self._stop_attempt_side_effects()
            self.save_now()
            self._started = False
        self.writer.close()
        self.gateway.local.close()

    def flush(self) -> None:
        """Wait until queued persistence work has finished."""
        self.writer.flush()

    def handle_identity_change(self, identity: Identity | None) -> None:
        """React to sign-in or sign-out from the identity boundary."""
        with self._lock:
            self._switch_identity(identity)

    def sign_out(self) -> None:
        self.boundary.sign_out()

    def view(self) -> SessionView:
        """Return the current read-only projection."""
        with self._lock:
            state = self._state.copy()
            view = self.engine.current_view(state)
            elapsed = self._timer.current()
            return SessionView(
                identity=self._identity,
                state=state,
                elapsed_seconds=elapsed if elapsed is not None else self._timer.elapsed_seconds,
                auth_prompt_visible=self.auth_prompt_visible,
                question=self.engine.current_question(state),
                position=state.current_position,
                question_count=len(view) if view is not None else 0,
                awaiting_advance=self.engine.awaiting_advance(state),
            )

    def module_statuses(self) -> list[ModuleStatus]:
        """Return module states sorted by module id."""
        with self._lock:
            state = self._state
            active = state.attempt.module_id if state.attempt is not None else None
            return [
                ModuleStatus(
                    module=module,
                    unlocked=module_id in state.unlocked_module_ids,
                    completed=module_id in state.completed_module_ids,
                    gated=self.engine.guest_gated(module_id, is_guest=self.is_guest),
                    active=module_id == active,
                )
                for module_id, module in sorted(self.modules.items())
            ]

    def start_module(self, module_id: int, *, restart: bool = False) -> str:
        """Begin an attempt; returns the engine start check result."""
        with self._lock:
            if self._identity is None:
                return START_AUTH_REQUIRED
            draft = self._state.copy()
            check = self.engine.start_module(
                draft,
                module_id,
                is_guest=self.is_guest,
                started_at=datetime.now(UTC).isoformat(),
                restart=restart,
            )
            if check == START_AUTH_REQUIRED:
                self._show_auth_prompt(trigger="gated_module", module_id=module_id)
                return check
            if check != START_OK:
                logger.debug("Ignored start of module %s: %s", module_id, check)
                return check

            self._cancel_advance()
            self._commit(draft)
            self._timer.start()
            self._emit(MODULE_STARTED, module_id=module_id, restart=restart)
            return check

    def submit_answer(self, selected_index: int) -> AnswerOutcome | None:
        """Score an answer for the current question and schedule the delayed advance."""
        with self._lock:
            draft = self._state.copy()
            outcome = self.engine.submit_answer(draft, selected_index)
            if outcome is None:
                return None
            achievement_id = self._evaluate_achievements(draft)
            self._commit(draft)
            if achievement_id is not None:
                self._emit(ACHIEVEMENT_UNLOCKED, achievement_id=achievement_id)
            if self.config.advance_delay is not None:
                self._schedule_advance((outcome.module_id, outcome.position))
            return outcome

    def advance(self) -> ModuleResult | int | None:
        """Move past the answered question, completing the module after the last one."""
        with self._lock:
            draft = self._state.copy()
            result = self.engine.advance(draft, is_guest=self.is_guest, elapsed_seconds=self._timer.current())
            if result is None:
                return None
            self._cancel_advance()
            achievement_id = None
            if isinstance(result, ModuleResult):
                self._timer.stop()
                achievement_id = self._evaluate_achievements(draft)
            self._commit(draft)
            if achievement_id is not None:
                self._emit(ACHIEVEMENT_UNLOCKED, achievement_id=achievement_id)
            if isinstance(result, ModuleResult):
                self._after_completion(result)
            return result

    def use_power_up(self, kind: str) -> PowerUpOutcome | None:
        """Spend a power-up on the open question."""
        with self._lock:
            draft = self._state.copy()
            outcome = self.engine.use_power_up(
                draft, kind, is_guest=self.is_guest, elapsed_seconds=self._timer.current()
            )
            if outcome is None:
                return None
            achievement_id = None
            if outcome.module_result is not None:
                self._timer.stop()
                achievement_id = self._evaluate_achievements(draft)
            self._commit(draft)
            if achievement_id is not None:
                self._emit(ACHIEVEMENT_UNLOCKED, achievement_id=achievement_id)
            if outcome.module_result is not None:
                self._after_completion(outcome.module_result)
            return outcome

    def dismiss_auth_prompt(self) -> bool:
        """Close the sign-up prompt; the guest keeps module 0 and later modules stay locked."""
        with self._lock:
            if not self.auth_prompt_visible and self._state.pending_completion is None:
                return False
            self._cancel_prompt()
            self.auth_prompt_visible = False
            pending = self._state.pending_completion
            if pending is not None:
                draft = self._state.copy()
                draft.pending_completion = None
                self._commit(draft)
            self._emit(AUTH_PROMPT_DISMISSED, module_id=pending.module_id if pending is not None else None)
            return True

    def reset(self) -> None:
        """Return to the initial state and delete every persisted copy for the current identity."""
        with self._lock:
            self._stop_attempt_side_effects()
            self.auth_prompt_visible = False
            self._install(self.engine.reset())
            if self._identity is not None:
                self.writer.clear(self._identity)
            self._emit(PROGRESS_RESET)

    def load(self) -> ProgressionState:
        """Re-read persisted progress for the current identity."""
        with self._lock:
            self._stop_attempt_side_effects()
            self.writer.flush()
            if self._identity is not None:
                self._install(self._load_state(self._identity))
            return self._state.copy()

    def save_now(self) -> bool:
        """Queue a snapshot save when the state changed since the last one."""
        with self._lock:
            if self._identity is None or self._revision == self._saved_revision:
                return False
            self.writer.submit(self._identity, snapshot(self._state))
            self._saved_revision = self._revision
            return True

    def leaderboard(self, module_id: int | None = None, limit: int = LEADERBOARD_LIMIT) -> Leaderboard:
        """Read the overall leaderboard, or one module's board when `module_id` is given."""
        identity = self._identity
        if identity is None:
            return Leaderboard()
        return self.gateway.leaderboard(identity, module_id, limit)

    def user_rank(self) -> int | None:
        identity = self._identity
        return self.gateway.user_rank(identity) if identity is not None else None

    def module_performance(self) -> list[LeaderboardEntry]:
        identity = self._identity
        return self.gateway.module_performance(identity) if identity is not None else []

    def export_progress(self, export_path: Path | str) -> ProgressTransferSummary:
        """Export the current progress to a JSON file."""
        with self._lock:
            state = self._state.copy()
            identity = self._identity
        payload = {
            "format_version": EXPORT_FORMAT_VERSION,
            "exported_at": datetime.now(UTC).isoformat(),
            "source": {
                "app_version": __version__,
                "snapshot_version": SNAPSHOT_VERSION,
            },
            "identity": {
                "kind": "guest" if identity is None or identity.is_guest else "user",
                "name": identity.name if identity is not None else None,
            },
            "progress": snapshot(state),
        }
        path = Path(export_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return _transfer_summary(path, state)

    def import_progress(self, import_path: Path | str) -> ProgressTransferSummary:
        """Replace current progress with a JSON export."""
        path = Path(import_path)
        raw_obj: object = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw_obj, dict):
            raise ValueError("Import file root must be a JSON object.")
        raw = cast(dict[str, object], raw_obj)

        version_raw = raw.get("format_version", 0)
        if isinstance(version_raw, bool) or not isinstance(version_raw, int):
            raise ValueError("Import file has invalid format_version.")
        if version_raw > EXPORT_FORMAT_VERSION:
            raise ValueError(
                f"Import file format version {version_raw} is newer than supported {EXPORT_FORMAT_VERSION}."
            )
        progress = raw.get("progress")
        if not isinstance(progress, dict):
            raise ValueError("Import file has no progress object.")
        state = restore(cast(dict[str, object], progress), self.modules)

        with self._lock:
            self._stop_attempt_side_effects()
            state = self._apply_identity_policy(state, self.is_guest)
            self._install(state)
            self._revision += 1
            self.save_now()
        return _transfer_summary(path, state)

    def _switch_identity(self, identity: Identity | None) -> None:
        previous = self._identity
        previous_state = self._state
        target = identity if identity is not None else self._resolve_guest()
        if previous is not None and previous.key == target.key:
            return

        self._stop_attempt_side_effects()
        self.save_now()
        self._session += 1
        self._identity = target
        self.auth_prompt_visible = False

        if (
            isinstance(previous, GuestIdentity)
            and isinstance(target, AuthenticatedIdentity)
            and _has_guest_progress(previous_state)
        ):
            self._migrate_guest(previous, previous_state, target)
            return
        self._install(self._load_state(target))
        logger.info("Loaded progress for %s", target.key)

    def _resolve_guest(self) -> GuestIdentity:
        guest, created = resolve_guest(self.guest_store)
        if guest.is_fallback:
            self._emit(GUEST_INITIALIZATION_ERROR, identity=guest.key)
        else:
            self._emit(GUEST_USER_LOADED, identity=guest.key, created=created)
        return guest

    def _load_state(self, identity: Identity) -> ProgressionState:
        raw = self.gateway.load(identity)
        if raw is None:
            return initial_state()
        try:
            state = restore(raw, self.modules)
        except ValueError:
            logger.warning("Discarding unreadable snapshot for %s", identity.key, exc_info=True)
            return initial_state()
        return self._apply_identity_policy(state, identity.is_guest)

    def _apply_identity_policy(self, state: ProgressionState, is_guest: bool) -> ProgressionState:
        """Keep gated modules locked for guests; authenticated progress carries no pending marker."""
        if is_guest:
            state.unlocked_module_ids = {
                module_id
                for module_id in state.unlocked_module_ids
                if not self.engine.guest_gated(module_id, is_guest=True)
            }
        else:
            state.pending_completion = None
        return state

    def _migrate_guest(
        self, guest: GuestIdentity, guest_state: ProgressionState, identity: AuthenticatedIdentity
    ) -> None:
        pending = guest_state.pending_completion
        try:
            existing = self._existing_progress(identity)
            if existing is not None:
                state = restore(existing, self.modules)
                source = "remote"
            else:
                state = restore(snapshot(guest_state), self.modules)
                source = "guest"
            state = self._apply_identity_policy(state, False)
        except Exception:
            logger.exception("Guest migration from %s to %s failed", guest.key, identity.key)
            self._emit(GUEST_MIGRATION_FAILED, guest=guest.key)
            self._install(self._load_state(identity))
            if pending is not None:
                guest_state = guest_state.copy()
                guest_state.pending_completion = None
                self.writer.submit(guest, snapshot(guest_state))
            return

        self._install(state)
        self.writer.clear(guest)
        self.writer.call(self.guest_store.clear_guest)
        if source == "guest":
            self._revision += 1
            self.save_now()
            if pending is not None:
                self._submit_result(_pending_result(pending, state, self.modules))
        self._emit(GUEST_MIGRATED, guest=guest.key, source=source)
        logger.info("Migrated %s to %s using %s progress", guest.key, identity.key, source)

    def _existing_progress(self, identity: AuthenticatedIdentity) -> dict[str, object] | None:
        if self.gateway.remote is not None:
            return self.gateway.load_remote(identity)
        return self.gateway.load_local(identity)

    def _install(self, state: ProgressionState) -> None:
        """Replace state with freshly loaded progress that matches what is persisted."""
        self._state = state
        self._revision += 1
        self._saved_revision = self._revision
        if state.attempt is not None:
            self._timer.start()
        if self.is_guest and state.pending_completion is not None:
            self._schedule_prompt()

    def _commit(self, draft: ProgressionState) -> None:
        self._state = draft
        self._revision += 1
        self.save_now()

    def _evaluate_achievements(self, draft: ProgressionState) -> int | None:
        achievement = self.engine.evaluate_achievements(draft)
        return achievement.id if achievement is not None else None

    def _after_completion(self, result: ModuleResult) -> None:
        self._emit(
            MODULE_COMPLETED,
            module_id=result.module_id,
            score=result.score,
            perfect=result.perfect,
            elapsed_seconds=result.elapsed_seconds,
            pending_auth=result.pending_auth,
        )
        if isinstance(self._identity, AuthenticatedIdentity):
            self._submit_result(result)
        if result.pending_auth:
            self._schedule_prompt()

    def _submit_result(self, result: ModuleResult) -> None:
        identity = self._identity
        if identity is None:
            return
        title = self.modules[result.module_id].title
        self.writer.call(self.gateway.submit_module_result, identity, result, title)

    def _schedule_advance(self, key: tuple[int, int]) -> None:
        self._cancel_advance()
        session = self._session
        delay = self.config.advance_delay or 0.0
        self._advance_handle = self.scheduler.call_later(delay, lambda: self._advance_due(session, key))

    def _advance_due(self, session: int, key: tuple[int, int]) -> None:
        with self._lock:
            if session != self._session:
                return
            self._advance_handle = None
            attempt = self._state.attempt
            if attempt is None or (attempt.module_id, self._state.current_position) != key:
                return
            self.advance()

    def _schedule_prompt(self) -> None:
        self._cancel_prompt()
        session = self._session
        delay = self.config.auth_prompt_delay
        self._prompt_handle = self.scheduler.call_later(delay, lambda: self._prompt_due(session))

    def _prompt_due(self, session: int) -> None:
        with self._lock:
            if session != self._session:
                return
            self._prompt_handle = None
            pending = self._state.pending_completion
            if pending is None or not self.is_guest:
                return
            self._show_auth_prompt(trigger="module_completed", module_id=pending.module_id)

    def _show_auth_prompt(self, *, trigger: str, module_id: int) -> None:
        self._cancel_prompt()
        self.auth_prompt_visible = True
        self._emit(AUTH_PROMPT_SHOWN, trigger=trigger, module_id=module_id)

    def _cancel_advance(self) -> None:
        if self._advance_handle is not None:
            self._advance_handle.cancel()
            self._advance_handle = None

    def _cancel_prompt(self) -> None:
        if self._prompt_handle is not None:
            self._prompt_handle.cancel()
            self._prompt_handle = None

    def _stop_attempt_side_effects(self) -> None:
        self._cancel_advance()
        self._cancel_prompt()
        self._timer.reset()

    def _autosave_tick(self) -> None:
        if self.save_now():
            logger.debug("Auto-saved progress for %s", self._identity.key if self._identity else None)

    def _emit(self, name: str, **payload: object) -> None:
        event: dict[str, object] = {"identity": self._identity.key if self._identity is not None else None}
        event.update(payload)
        try:
            self.telemetry.emit(name, event)
        except Exception:
            logger.warning("Telemetry event %s was dropped", name, exc_info=True)


def create_service(
    config: GameConfig,
    boundary: IdentityBoundary,
    *,
    scheduler: Scheduler | None = None,
    modules: Mapping[int, Module] | None = None,
) -> TrainingService:
    """Wire the service with the local store, optional Supabase backend and telemetry log."""
    store = open_store(config.db_path)
    gateway = PersistenceGateway(store, create_remote_store(config.supabase_url, config.supabase_key))
    telemetry = FanoutTelemetrySink(LoggingTelemetrySink(), LocalTelemetryLog(store))
    return TrainingService(
        modules if modules is not None else load_modules(),
        gateway,
        boundary,
        config=config,
        scheduler=scheduler,
        telemetry=telemetry,
    )


def _has_guest_progress(state: ProgressionState) -> bool:
    return state != initial_state()


def _pending_result(
    pending: PendingCompletion, state: ProgressionState, modules: Mapping[int, Module]
) -> ModuleResult:
    """Rebuild the completion summary of a guest module finished before sign-up."""
    answers = state.module_answers(pending.module_id)
    next_id = pending.module_id + 1
    return ModuleResult(
        module_id=pending.module_id,
        score=pending.score,
        perfect=pending.perfect,
        elapsed_seconds=pending.elapsed_seconds,
        questions_answered=sum(1 for record in answers.values() if record.answered),
        questions_correct=sum(1 for record in answers.values() if record.was_correct),
        unlocked_module_id=next_id if next_id in modules else None,
        pending_auth=False,
    )


def _transfer_summary(path: Path, state: ProgressionState) -> ProgressTransferSummary:
    return ProgressTransferSummary(
        path=path,
        score=state.score,
        level=state.level,
        completed_modules=len(state.completed_module_ids),
        answered_questions=len(state.answered_questions),
    )
