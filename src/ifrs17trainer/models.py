"""Core domain models for the IFRS 17 question bank and module attempts."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Question:
    """One multiple-choice question."""

    text: str
    options: tuple[str, ...]
    correct_index: int
    explanation: str


@dataclass(frozen=True)
class Module:
    """Themed, ordered group of questions; the unit of unlocking and completion."""

    id: int
    title: str
    icon: str
    color_theme: str
    questions: tuple[Question, ...]


@dataclass(frozen=True)
class ShuffledQuestion:
    """Question placed at a shuffled position, remembering where it came from."""

    question: Question
    original_index: int


@dataclass(frozen=True)
class ShuffledModuleView:
    """Randomized presentation order of one module's questions for a single attempt."""

    module_id: int
    order: tuple[ShuffledQuestion, ...]

    def __len__(self) -> int:
        return len(self.order)

    def question_at(self, position: int) -> Question:
        """Return the question shown at a shuffled position."""
        return self.order[position].question

    def original_index_at(self, position: int) -> int:
        """Return the bank index of the question at a shuffled position."""
        return self.order[position].original_index

    def correct_index_at(self, position: int) -> int:
        """Return the correct option index for the question at a shuffled position."""
        return self.order[position].question.correct_index

    def original_indices(self) -> list[int]:
        return [item.original_index for item in self.order]


@dataclass(frozen=True)
class AnswerRecord:
    """Recorded outcome for one (module, shuffled position) key.

    `selected_index` is None for a skipped question, which is never correct.
    """

    answered: bool
    selected_index: int | None
    was_correct: bool


@dataclass(frozen=True)
class LeaderboardEntry:
    """One ranked row of the overall or a per-module leaderboard."""

    rank: int
    user_id: str
    user_name: str
    score: int
    module_id: int | None = None
    perfect: bool = False
    completion_time: int | None = None


@dataclass(frozen=True)
class Leaderboard:
    """Top entries plus the viewing player's own row, when known."""

    entries: tuple[LeaderboardEntry, ...] = ()
    user_position: LeaderboardEntry | None = None
