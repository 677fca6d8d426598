"""Achievement definitions and evaluation over explicit stat snapshots."""

from __future__ import annotations

from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True)
class AchievementStats:
    """Cumulative progression figures achievements are judged against."""

    score: int
    streak: int
    level: int
    completed_modules: int
    perfect_modules: int
    max_combo: int


@dataclass(frozen=True)
class Achievement:
    """One earnable achievement.

    `variants` maps an identity presentation variant to an alternative
    (name, icon) pair. Earning never depends on the variant.
    """

    id: int
    name: str
    icon: str
    predicate: Callable[[AchievementStats], bool]
    variants: Mapping[str, tuple[str, str]] = field(default_factory=dict)


ACHIEVEMENTS: tuple[Achievement, ...] = (
    Achievement(1, "First Steps", "🎯", lambda stats: stats.score >= 10),
    Achievement(2, "Quick Learner", "⚡", lambda stats: stats.streak >= 5),
    Achievement(3, "Module Master", "🏆", lambda stats: stats.completed_modules >= 1),
    Achievement(
        4,
        "IFRS Expert",
        "🎓",
        lambda stats: stats.level >= 5,
        variants={"female": ("IFRS Expert", "👩‍🎓"), "male": ("IFRS Expert", "👨‍🎓")},
    ),
    Achievement(5, "Perfect Score", "💯", lambda stats: stats.perfect_modules >= 1),
    Achievement(
        6,
        "Combo King",
        "🔥",
        lambda stats: stats.max_combo >= 10,
        variants={"female": ("Combo Queen", "👑")},
    ),
    Achievement(7, "Knowledge Seeker", "📚", lambda stats: stats.completed_modules >= 5),
    Achievement(8, "Unstoppable", "💪", lambda stats: stats.streak >= 15),
)

ACHIEVEMENTS_BY_ID: Mapping[int, Achievement] = {item.id: item for item in ACHIEVEMENTS}


def new_achievements(earned: Collection[int], stats: AchievementStats) -> list[Achievement]:
    """Return every achievement newly qualified for, in definition order."""
    return [item for item in ACHIEVEMENTS if item.id not in earned and item.predicate(stats)]


def evaluate(earned: Collection[int], stats: AchievementStats) -> list[Achievement]:
    """Return the first newly earned achievement (as a 0/1-length list).

    Only one achievement is surfaced per evaluation; the rest are picked up by
    later evaluations.
    """
    return new_achievements(earned, stats)[:1]


def display_for(achievement: Achievement, variant: str | None = None) -> tuple[str, str]:
    """Return the (name, icon) to show for an identity's presentation variant."""
    if variant is not None:
        override = achievement.variants.get(variant.strip().lower())
        if override is not None:
            return override
    return (achievement.name, achievement.icon)
