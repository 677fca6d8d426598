"""Consumable quiz aids and their refill rules."""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import dataclass, field

HINT = "hint"
ELIMINATE = "eliminate"
SKIP = "skip"
POWER_UP_KINDS = (HINT, ELIMINATE, SKIP)

INITIAL_POWER_UPS: Mapping[str, int] = {HINT: 5, ELIMINATE: 3, SKIP: 2}
POWER_UP_REFILL: Mapping[str, int] = {HINT: 2, ELIMINATE: 1, SKIP: 1}
POWER_UP_MAX: Mapping[str, int] = {HINT: 5, ELIMINATE: 3, SKIP: 2}

HINT_TEXT = "Look for the option that best aligns with IFRS 17 principles."
ELIMINATE_COUNT = 2


@dataclass(frozen=True)
class PowerUpInfo:
    """Display metadata for one power-up kind."""

    kind: str
    name: str
    icon: str
    description: str


POWER_UP_INFO: Mapping[str, PowerUpInfo] = {
    HINT: PowerUpInfo(HINT, "Hint", "💡", "Get a helpful hint about the correct answer"),
    ELIMINATE: PowerUpInfo(ELIMINATE, "Eliminate", "🎯", "Remove two incorrect answers"),
    SKIP: PowerUpInfo(SKIP, "Skip", "⏭️", "Skip this question and move to the next"),
}


@dataclass(frozen=True)
class PowerUpLedger:
    """Remaining count per power-up kind, bounded by POWER_UP_MAX."""

    counts: Mapping[str, int] = field(default_factory=lambda: dict(INITIAL_POWER_UPS))

    def remaining(self, kind: str) -> int:
        return int(self.counts.get(kind, 0))

    def can_use(self, kind: str) -> bool:
        """Return whether at least one of `kind` is left."""
        return self.remaining(kind) > 0

    def consume(self, kind: str) -> PowerUpLedger:
        """Return a ledger with one `kind` used; unchanged when none are left."""
        if not self.can_use(kind):
            return self
        counts = dict(self.counts)
        counts[kind] = counts[kind] - 1
        return PowerUpLedger(counts)

    def refill(self) -> PowerUpLedger:
        """Return a ledger topped up by the per-kind refill amount, capped at the maximum."""
        counts = {
            kind: min(self.remaining(kind) + POWER_UP_REFILL[kind], POWER_UP_MAX[kind]) for kind in POWER_UP_KINDS
        }
        return PowerUpLedger(counts)

    def to_dict(self) -> dict[str, int]:
        return {kind: self.remaining(kind) for kind in POWER_UP_KINDS}

    @classmethod
    def from_dict(cls, raw: Mapping[str, object] | None) -> PowerUpLedger:
        """Build a ledger from persisted counts, clamping each kind into [0, max]."""
        if raw is None:
            return cls()
        counts: dict[str, int] = {}
        for kind in POWER_UP_KINDS:
            value = raw.get(kind, INITIAL_POWER_UPS[kind])
            if isinstance(value, bool) or not isinstance(value, int | float | str):
                count = INITIAL_POWER_UPS[kind]
            else:
                try:
                    count = int(value)
                except (ValueError, OverflowError):
                    count = INITIAL_POWER_UPS[kind]
            counts[kind] = max(0, min(count, POWER_UP_MAX[kind]))
        return cls(counts)


def eliminate_options(option_count: int, correct_index: int, rng: random.Random | None = None) -> tuple[int, ...]:
    """Pick up to two wrong option indices to hide from the player."""
    source = rng if rng is not None else random
    wrong = [index for index in range(option_count) if index != correct_index]
    picked = source.sample(wrong, k=min(ELIMINATE_COUNT, len(wrong)))
    return tuple(sorted(picked))
