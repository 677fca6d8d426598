import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from ifrs17trainer.config import GameConfig
from ifrs17trainer.engine import (
    START_AUTH_REQUIRED,
    START_LOCKED,
    START_OK,
    ModuleResult,
)
from ifrs17trainer.identity import AuthenticatedIdentity, GuestIdentity, LocalIdentityBoundary
from ifrs17trainer.models import AnswerRecord, LeaderboardEntry
from ifrs17trainer.persistence import PersistenceGateway
from ifrs17trainer.powerups import SKIP
from ifrs17trainer.progress import ProgressStore
from ifrs17trainer.scheduling import ManualScheduler
from ifrs17trainer.service import EXPORT_FORMAT_VERSION, TrainingService
from ifrs17trainer.state import initial_state
from ifrs17trainer.telemetry import (
    ACHIEVEMENT_UNLOCKED,
    AUTH_PROMPT_DISMISSED,
    AUTH_PROMPT_SHOWN,
    GUEST_MIGRATED,
    GUEST_MIGRATION_FAILED,
    GUEST_USER_LOADED,
    MODULE_COMPLETED,
    MODULE_STARTED,
    PROGRESS_RESET,
)

USER = AuthenticatedIdentity(user_id="u1", name="Ann", email="ann@example.com")
MakeService = Callable[..., TrainingService]


def _answer_all(service: TrainingService, answers: list[int]) -> object:
    result: object = None
    for answer in answers:
        assert service.submit_answer(answer) is not None
        result = service.advance()
    return result


def _complete_module_zero(service: TrainingService) -> ModuleResult:
    assert service.start_module(0) == START_OK
    result = _answer_all(service, [0, 0, 0])
    assert isinstance(result, ModuleResult)
    return result


def test_start_loads_new_guest(make_service: MakeService, store: ProgressStore, telemetry: Any) -> None:
    service = make_service()
    identity = service.identity
    assert isinstance(identity, GuestIdentity)
    assert store.load_guest() == identity
    assert service.state == initial_state()
    assert telemetry.payloads(GUEST_USER_LOADED) == [{"identity": identity.key, "created": True}]


def test_guest_perfect_module_defers_unlock_and_prompts(
    make_service: MakeService, scheduler: ManualScheduler, telemetry: Any
) -> None:
    service = make_service()
    result = _complete_module_zero(service)

    state = service.state
    assert result.score == 60
    assert result.perfect is True
    assert result.pending_auth is True
    assert state.score == 60
    assert state.perfect_module_count == 1
    assert state.completed_module_ids == {0}
    assert 1 not in state.unlocked_module_ids
    assert state.pending_completion is not None
    assert service.auth_prompt_visible is False
    assert AUTH_PROMPT_SHOWN not in telemetry.names()

    scheduler.advance(3)
    assert service.auth_prompt_visible is True
    assert telemetry.payloads(AUTH_PROMPT_SHOWN)[-1]["trigger"] == "module_completed"
    assert MODULE_COMPLETED in telemetry.names()


def test_guest_module_with_mistake_scores_twenty(make_service: MakeService) -> None:
    service = make_service()
    service.start_module(0)
    result = _answer_all(service, [0, 1, 0])
    assert isinstance(result, ModuleResult)
    assert result.score == 20
    assert result.perfect is False
    assert service.state.perfect_module_count == 0


def test_authenticated_remote_progress_is_loaded(make_service: MakeService, remote: Any) -> None:
    remote.snapshots["u1"] = {"score": 50, "level": 2, "completedModuleIds": [0]}
    service = make_service(USER)
    state = service.state
    assert state.score == 50
    assert state.level == 2
    assert state.completed_module_ids == {0}
    assert 1 in state.unlocked_module_ids
    assert service.start_module(1) == START_OK


def test_skip_on_last_question_completes_module(make_service: MakeService) -> None:
    service = make_service()
    service.start_module(0)
    skipped = service.use_power_up(SKIP)
    assert skipped is not None
    assert skipped.remaining == 1
    _answer_all(service, [0])

    outcome = service.use_power_up(SKIP)
    assert outcome is not None
    assert outcome.remaining == 0
    assert outcome.module_result is not None
    assert outcome.module_result.perfect is False
    state = service.state
    assert state.power_ups.remaining(SKIP) == 0
    assert state.answered_questions[(0, 2)] == AnswerRecord(answered=True, selected_index=None, was_correct=False)
    assert 0 in state.completed_module_ids


def test_guest_gated_module_shows_prompt_immediately(make_service: MakeService, telemetry: Any) -> None:
    service = make_service()
    assert service.start_module(1) == START_AUTH_REQUIRED
    assert service.auth_prompt_visible is True
    assert telemetry.payloads(AUTH_PROMPT_SHOWN) == [
        {"identity": service.identity.key if service.identity else None, "trigger": "gated_module", "module_id": 1}
    ]
    assert service.state.attempt is None


def test_dismiss_prompt_keeps_guest_progress(
    make_service: MakeService, scheduler: ManualScheduler, telemetry: Any
) -> None:
    service = make_service()
    _complete_module_zero(service)
    scheduler.advance(3)
    assert service.dismiss_auth_prompt() is True
    state = service.state
    assert service.auth_prompt_visible is False
    assert state.pending_completion is None
    assert state.completed_module_ids == {0}
    assert 1 not in state.unlocked_module_ids
    assert AUTH_PROMPT_DISMISSED in telemetry.names()
    assert service.dismiss_auth_prompt() is False
    assert service.start_module(1) == START_AUTH_REQUIRED


def test_guest_progress_migrates_on_sign_in(
    make_service: MakeService, remote: Any, store: ProgressStore, telemetry: Any
) -> None:
    service = make_service()
    guest = service.identity
    assert isinstance(guest, GuestIdentity)
    _complete_module_zero(service)

    service.boundary.sign_in(USER)  # type: ignore[attr-defined]
    service.flush()

    state = service.state
    assert service.identity == USER
    assert state.score == 60
    assert state.completed_module_ids == {0}
    assert state.unlocked_module_ids == {0, 1}
    assert state.pending_completion is None
    assert remote.snapshots["u1"]["completed_module_ids"] == [0]
    assert [(user_id, result.module_id) for user_id, result, _ in remote.results] == [("u1", 0)]
    assert store.load_guest() is None
    assert store.load_snapshot(guest.key) is None
    assert telemetry.payloads(GUEST_MIGRATED)[-1]["source"] == "guest"
    assert service.start_module(1) == START_OK


def test_guest_mid_module_progress_migrates_on_sign_in(
    make_service: MakeService, remote: Any, store: ProgressStore, telemetry: Any
) -> None:
    service = make_service()
    guest = service.identity
    assert isinstance(guest, GuestIdentity)
    assert service.start_module(0) == START_OK
    assert service.submit_answer(0) is not None

    service.boundary.sign_in(USER)  # type: ignore[attr-defined]
    service.flush()

    state = service.state
    assert state.score == 10
    assert state.achievements == [1]
    assert state.answered_questions[(0, 0)] == AnswerRecord(answered=True, selected_index=0, was_correct=True)
    assert remote.snapshots["u1"]["score"] == 10
    assert remote.results == []
    assert store.load_snapshot(guest.key) is None
    assert telemetry.payloads(GUEST_MIGRATED)[-1]["source"] == "guest"


def test_fresh_guest_sign_in_skips_migration(make_service: MakeService, remote: Any, telemetry: Any) -> None:
    remote.snapshots["u1"] = {"score": 70}
    service = make_service()
    service.boundary.sign_in(USER)  # type: ignore[attr-defined]
    service.flush()
    assert service.state.score == 70
    assert GUEST_MIGRATED not in telemetry.names()



def test_existing_remote_progress_wins_over_guest(make_service: MakeService, remote: Any, store: ProgressStore) -> None:
    remote.snapshots["u1"] = {"score": 500, "level": 4, "completed_module_ids": [0, 1]}
    service = make_service()
    guest = service.identity
    assert guest is not None
    _complete_module_zero(service)

    service.boundary.sign_in(USER)  # type: ignore[attr-defined]
    service.flush()

    state = service.state
    assert state.score == 500
    assert state.completed_module_ids == {0, 1}
    assert remote.results == []
    assert store.load_snapshot(guest.key) is None


def test_failed_migration_falls_back_to_fresh_state(
    make_service: MakeService, remote: Any, store: ProgressStore, telemetry: Any
) -> None:
    service = make_service()
    guest = service.identity
    assert guest is not None
    _complete_module_zero(service)
    remote.fail_load = True

    service.boundary.sign_in(USER)  # type: ignore[attr-defined]
    service.flush()

    state = service.state
    assert state == initial_state()
    assert GUEST_MIGRATION_FAILED in telemetry.names()
    guest_snapshot = store.load_snapshot(guest.key)
    assert guest_snapshot is not None
    assert guest_snapshot["pending_completion"] is None


def test_sign_out_returns_to_guest(make_service: MakeService, remote: Any) -> None:
    remote.snapshots["u1"] = {"score": 50, "completed_module_ids": [0]}
    service = make_service(USER)
    service.sign_out()
    assert isinstance(service.identity, GuestIdentity)
    assert service.state.score == 0


def test_guest_load_keeps_gated_modules_locked(make_service: MakeService, store: ProgressStore) -> None:
    guest = GuestIdentity(id="guest_1_abcdefghi", created_at="2026-01-01T00:00:00+00:00")
    store.save_guest(guest)
    store.save_snapshot(guest.key, {"score": 60, "completed_module_ids": [0], "unlocked_module_ids": [0, 1]})
    service = make_service()
    assert service.identity == guest
    assert service.state.unlocked_module_ids == {0}
    assert service.start_module(1) == START_AUTH_REQUIRED


def test_authenticated_completion_submits_result(make_service: MakeService, remote: Any, scheduler: Any) -> None:
    service = make_service(USER)
    service.start_module(0)
    scheduler.advance(12)
    result = _answer_all(service, [0, 0, 0])
    service.flush()
    assert isinstance(result, ModuleResult)
    assert result.unlocked_module_id == 1
    assert result.elapsed_seconds == 12
    assert [(user_id, item.module_id, title) for user_id, item, title in remote.results] == [("u1", 0, "Module 0")]
    assert remote.snapshots["u1"]["unlocked_module_ids"] == [0, 1]


def test_delayed_advance_moves_after_delay(make_service: MakeService, scheduler: ManualScheduler) -> None:
    service = make_service(USER, advance_delay=7.0)
    service.start_module(0)
    service.submit_answer(0)
    scheduler.advance(6)
    assert service.view().position == 0
    assert service.view().awaiting_advance is True
    scheduler.advance(1)
    assert service.view().position == 1
    assert service.view().awaiting_advance is False


def test_manual_advance_cancels_delayed_advance(make_service: MakeService, scheduler: ManualScheduler) -> None:
    service = make_service(USER, advance_delay=7.0)
    service.start_module(0)
    service.submit_answer(0)
    assert service.advance() == 1
    service.submit_answer(0)
    scheduler.advance(7)
    assert service.view().position == 2


def test_duplicate_answer_is_ignored(make_service: MakeService) -> None:
    service = make_service()
    service.start_module(0)
    assert service.submit_answer(0) is not None
    assert service.submit_answer(1) is None
    assert service.state.score == 10


def test_locked_module_start_is_ignored(make_service: MakeService) -> None:
    service = make_service(USER)
    assert service.start_module(2) == START_LOCKED
    assert service.state.attempt is None


def test_attempt_timer_stops_on_every_exit(make_service: MakeService, scheduler: ManualScheduler) -> None:
    service = make_service(USER)
    baseline = scheduler.pending()
    service.start_module(0)
    assert scheduler.pending() == baseline + 1
    scheduler.advance(5)
    assert service.view().elapsed_seconds == 5

    service.reset()
    assert scheduler.pending() == baseline

    service.start_module(0)
    _answer_all(service, [0, 0, 0])
    assert scheduler.pending() == baseline

    service.start_module(1)
    service.sign_out()
    assert scheduler.pending() == baseline


def test_reset_then_load_yields_initial_state(make_service: MakeService, remote: Any, telemetry: Any) -> None:
    service = make_service(USER)
    _complete_module_zero(service)
    service.flush()
    assert "u1" in remote.snapshots

    service.reset()
    assert service.state == initial_state()
    assert service.load() == initial_state()
    assert "u1" not in remote.snapshots
    assert PROGRESS_RESET in telemetry.names()


def test_autosave_skips_unchanged_state(
    make_service: MakeService, scheduler: ManualScheduler, monkeypatch: Any
) -> None:
    service = make_service()
    submitted: list[str] = []
    original = service.writer.submit

    def counting_submit(identity: Any, payload: dict[str, object]) -> None:
        submitted.append(identity.key)
        original(identity, payload)

    monkeypatch.setattr(service.writer, "submit", counting_submit)
    scheduler.advance(30)
    assert submitted == []
    assert service.save_now() is False

    service.start_module(0)
    assert len(submitted) == 1
    scheduler.advance(30)
    assert len(submitted) == 1


def test_achievements_are_awarded_and_reported(make_service: MakeService, telemetry: Any) -> None:
    service = make_service()
    _complete_module_zero(service)
    state = service.state
    assert 1 in state.achievements
    assert 3 in state.achievements
    unlocked = [payload["achievement_id"] for payload in telemetry.payloads(ACHIEVEMENT_UNLOCKED)]
    assert unlocked == state.achievements


def test_module_started_event(make_service: MakeService, telemetry: Any) -> None:
    service = make_service()
    service.start_module(0)
    assert telemetry.payloads(MODULE_STARTED)[-1]["module_id"] == 0


def test_view_projects_current_question(make_service: MakeService) -> None:
    service = make_service()
    view = service.view()
    assert view.question is None
    assert view.question_count == 0
    service.start_module(0)
    view = service.view()
    assert view.question is not None
    assert view.question_count == 3
    assert view.position == 0
    statuses = service.module_statuses()
    assert [item.active for item in statuses] == [True, False, False]
    assert [item.gated for item in statuses] == [False, True, True]


def test_export_and_import_round_trip(make_service: MakeService, tmp_path: Path) -> None:
    service = make_service(USER)
    _complete_module_zero(service)
    path = tmp_path / "backup" / "progress.json"
    summary = service.export_progress(path)
    assert summary.score == 60
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["format_version"] == EXPORT_FORMAT_VERSION
    assert payload["identity"] == {"kind": "user", "name": "Ann"}

    service.reset()
    imported = service.import_progress(path)
    assert imported.score == 60
    assert imported.completed_modules == 1
    assert service.state.completed_module_ids == {0}


def test_import_rejects_bad_files(make_service: MakeService, tmp_path: Path) -> None:
    service = make_service()
    cases = {
        "list.json": ("[]", "JSON object"),
        "future.json": (json.dumps({"format_version": EXPORT_FORMAT_VERSION + 1}), "newer than supported"),
        "empty.json": (json.dumps({"format_version": 1}), "no progress object"),
    }
    for name, (content, message) in cases.items():
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        with pytest.raises(ValueError, match=message):
            service.import_progress(path)


def test_close_flushes_unsaved_progress(
    question_bank: Any, scheduler: ManualScheduler, remote: Any, tmp_path: Path
) -> None:
    db_path = tmp_path / "progress.db"
    service = TrainingService(
        question_bank,
        PersistenceGateway(ProgressStore(db_path), remote),
        LocalIdentityBoundary(USER),
        config=GameConfig(advance_delay=None),
        scheduler=scheduler,
        clock=scheduler.clock,
    )
    service.start()
    service.start_module(0)
    service.submit_answer(0)
    service.close()

    reopened = ProgressStore(db_path)
    saved = reopened.load_snapshot(USER.key)
    reopened.close()
    assert saved is not None
    assert saved["score"] == 10


def test_save_after_reset_is_persisted(make_service: MakeService, store: ProgressStore) -> None:
    service = make_service(USER)
    _complete_module_zero(service)
    service.reset()
    assert service.start_module(0) == START_OK
    assert service.submit_answer(0) is not None
    service.flush()
    saved = store.load_snapshot(USER.key)
    assert saved is not None
    assert saved["score"] == 10


def test_leaderboard_reads_follow_identity(make_service: MakeService, remote: Any) -> None:
    own = LeaderboardEntry(rank=2, user_id="u1", user_name="Ann", score=60, module_id=0, perfect=True)
    remote.overall = [LeaderboardEntry(rank=1, user_id="u2", user_name="Bea", score=90), own]
    remote.module_entries = [own]
    service = make_service(USER)
    assert service.leaderboard().user_position == own
    assert service.leaderboard(module_id=0).entries == (own,)
    assert service.user_rank() == 2
    assert service.module_performance() == [own]

    service.sign_out()
    assert service.leaderboard().user_position is None
    assert service.user_rank() is None
    assert service.module_performance() == []
