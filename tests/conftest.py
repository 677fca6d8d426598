from __future__ import annotations

import random
import shutil
import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from uuid import uuid4

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ifrs17trainer.config import GameConfig  # noqa: E402
from ifrs17trainer.engine import ModuleResult  # noqa: E402
from ifrs17trainer.identity import Identity, LocalIdentityBoundary  # noqa: E402
from ifrs17trainer.models import Leaderboard, LeaderboardEntry, Module, Question  # noqa: E402
from ifrs17trainer.persistence import PersistenceGateway  # noqa: E402
from ifrs17trainer.progress import MEMORY_DB, ProgressStore  # noqa: E402
from ifrs17trainer.scheduling import ManualScheduler  # noqa: E402
from ifrs17trainer.service import TrainingService  # noqa: E402


def _tmp_path_fixture() -> Iterator[Path]:
    """Provide per-test temporary directory path inside the workspace.

    This intentionally overrides pytest's builtin ``tmp_path`` fixture for this
    repository. In this environment, system temp locations and builtin tmp-path
    setup are not reliable, so tests keep temporary files under the project
    working directory at ``.tmp_pytest/``.
    """
    base = ROOT / ".tmp_pytest"
    base.mkdir(parents=True, exist_ok=True)
    path = base / str(uuid4())
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        try:
            next(base.iterdir())
        except StopIteration:
            base.rmdir()
        except FileNotFoundError:
            pass


tmp_path = pytest.fixture(name="tmp_path")(_tmp_path_fixture)


def _module(module_id: int, count: int) -> Module:
    """Module whose questions all have option 0 as the correct answer."""
    questions = tuple(
        Question(
            text=f"Module {module_id} question {index}",
            options=("right", "wrong a", "wrong b", "wrong c"),
            correct_index=0,
            explanation=f"Explanation {module_id}-{index}",
        )
        for index in range(count)
    )
    return Module(id=module_id, title=f"Module {module_id}", icon="*", color_theme="blue", questions=questions)


class RecordingTelemetry:
    """Telemetry sink that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, object]]] = []

    def emit(self, name: str, payload: dict[str, object]) -> None:
        self.events.append((name, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payloads(self, name: str) -> list[dict[str, object]]:
        return [payload for event, payload in self.events if event == name]


class InMemoryRemoteStore:
    """Remote store double with switchable failures."""

    def __init__(self) -> None:
        self.snapshots: dict[str, dict[str, object]] = {}
        self.results: list[tuple[str, ModuleResult, str]] = []
        self.fail_load = False
        self.fail_save = False
        self.fail_clear = False
        self.cleared: list[str] = []
        self.fail_leaderboard = False
        self.overall: list[LeaderboardEntry] = []
        self.module_entries: list[LeaderboardEntry] = []
        self.leaderboard_calls: list[tuple[str, int | None, str | None, int]] = []

    def load_snapshot(self, user_id: str) -> dict[str, object] | None:
        if self.fail_load:
            raise RuntimeError("remote load failed")
        return self.snapshots.get(user_id)

    def save_snapshot(self, user_id: str, payload: dict[str, object]) -> None:
        if self.fail_save:
            raise RuntimeError("remote save failed")
        self.snapshots[user_id] = payload

    def clear_snapshot(self, user_id: str) -> None:
        if self.fail_clear:
            raise RuntimeError("remote clear failed")
        self.snapshots.pop(user_id, None)
        self.cleared.append(user_id)

    def submit_module_result(self, user_id: str, result: ModuleResult, module_title: str) -> None:
        self.results.append((user_id, result, module_title))

    def overall_leaderboard(self, user_id: str | None, limit: int) -> Leaderboard:
        self._read("overall", None, user_id, limit)
        own = next((entry for entry in self.overall if entry.user_id == user_id), None)
        return Leaderboard(entries=tuple(self.overall[:limit]), user_position=own)

    def module_leaderboard(self, module_id: int, user_id: str | None, limit: int) -> Leaderboard:
        self._read("module", module_id, user_id, limit)
        entries = tuple(entry for entry in self.module_entries if entry.module_id == module_id)[:limit]
        return Leaderboard(entries=entries)

    def user_rank(self, user_id: str) -> int | None:
        self._read("rank", None, user_id, 0)
        return next((entry.rank for entry in self.overall if entry.user_id == user_id), None)

    def module_performance(self, user_id: str) -> list[LeaderboardEntry]:
        self._read("performance", None, user_id, 0)
        return [entry for entry in self.module_entries if entry.user_id == user_id]

    def _read(self, kind: str, module_id: int | None, user_id: str | None, limit: int) -> None:
        if self.fail_leaderboard:
            raise RuntimeError("leaderboard read failed")
        self.leaderboard_calls.append((kind, module_id, user_id, limit))


@pytest.fixture
def question_bank() -> dict[int, Module]:
    return {0: _module(0, 3), 1: _module(1, 2), 2: _module(2, 2)}


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture
def store() -> Iterator[ProgressStore]:
    progress = ProgressStore(MEMORY_DB)
    yield progress
    progress.close()


@pytest.fixture
def make_service(
    question_bank: dict[int, Module],
    scheduler: ManualScheduler,
    telemetry: RecordingTelemetry,
    remote: InMemoryRemoteStore,
    store: ProgressStore,
) -> Iterator[Callable[..., TrainingService]]:
    """Build a started service on an in-memory store with a manual clock."""
    created: list[TrainingService] = []

    def build(identity: Identity | None = None, **config_overrides: object) -> TrainingService:
        settings: dict[str, object] = {"advance_delay": None}
        settings.update(config_overrides)
        service = TrainingService(
            question_bank,
            PersistenceGateway(store, remote),
            LocalIdentityBoundary(identity),
            config=GameConfig(**settings),  # type: ignore[arg-type]
            scheduler=scheduler,
            telemetry=telemetry,
            rng=random.Random(17),
            clock=scheduler.clock,
        )
        service.start()
        created.append(service)
        return service

    yield build
    for service in created:
        service.writer.close()
