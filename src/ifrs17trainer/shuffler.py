"""Randomized per-attempt question order."""

from __future__ import annotations

import random
from collections.abc import Sequence
from typing import TypeVar

from .models import Module, ShuffledModuleView, ShuffledQuestion

T = TypeVar("T")


def shuffle(items: Sequence[T], rng: random.Random | None = None) -> list[tuple[int, T]]:
    """Return a uniform random permutation of items paired with their original indices.

    Fisher-Yates: walk from the last index down to 1 and swap each slot with a
    uniformly chosen slot at or below it.
    """
    source = rng if rng is not None else random
    shuffled = list(enumerate(items))
    for i in range(len(shuffled) - 1, 0, -1):
        j = source.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def build_module_view(module: Module, rng: random.Random | None = None) -> ShuffledModuleView:
    """Generate a fresh shuffled view of a module's questions."""
    order = tuple(
        ShuffledQuestion(question=question, original_index=index) for index, question in shuffle(module.questions, rng)
    )
    return ShuffledModuleView(module_id=module.id, order=order)


def view_from_indices(module: Module, indices: Sequence[int]) -> ShuffledModuleView | None:
    """Rebuild a persisted view; None when the indices no longer permute the module's questions."""
    if sorted(indices) != list(range(len(module.questions))):
        return None
    order = tuple(ShuffledQuestion(question=module.questions[index], original_index=index) for index in indices)
    return ShuffledModuleView(module_id=module.id, order=order)
