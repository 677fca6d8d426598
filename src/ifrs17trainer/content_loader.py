"""Load the IFRS 17 question bank from bundled JSON resources."""

from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Any

from .models import Module, Question

CONTENT_PACKAGE = "ifrs17trainer.content.modules"
MIN_OPTIONS = 2


def _question_from_dict(module_id: int, position: int, raw: dict[str, Any]) -> Question:
    """Build a question from raw JSON content."""
    label = f"Module {module_id} question {position}"
    text = str(raw.get("question", raw.get("text", ""))).strip()
    if not text:
        raise ValueError(f"{label} has no question text.")

    options = tuple(str(value).strip() for value in raw.get("options", []))
    if len(options) < MIN_OPTIONS or any(not option for option in options):
        raise ValueError(f"{label} needs at least {MIN_OPTIONS} non-empty options.")

    correct_raw = raw.get("correct", raw.get("correct_index"))
    if isinstance(correct_raw, bool) or not isinstance(correct_raw, int):
        raise ValueError(f"{label} has no integer correct option index.")
    if not 0 <= correct_raw < len(options):
        raise ValueError(f"{label} correct index {correct_raw} is out of range for {len(options)} options.")

    return Question(
        text=text,
        options=options,
        correct_index=correct_raw,
        explanation=str(raw.get("explanation", "")).strip(),
    )


def _module_from_dict(raw: dict[str, Any]) -> Module:
    """Build a module from raw JSON content."""
    module_id = int(raw["id"])
    questions = tuple(
        _question_from_dict(module_id, position, item) for position, item in enumerate(raw.get("questions", []))
    )
    if not questions:
        raise ValueError(f"Module {module_id} has no questions.")
    return Module(
        id=module_id,
        title=str(raw["title"]),
        icon=str(raw.get("icon", "")),
        color_theme=str(raw.get("color_theme", raw.get("color", ""))),
        questions=questions,
    )


def _add_module(modules: dict[int, Module], raw: object) -> None:
    if not isinstance(raw, dict):
        raise ValueError("Module file root must be a JSON object.")
    module = _module_from_dict(raw)
    if module.id in modules:
        raise ValueError(f"Duplicate module id: {module.id}")
    modules[module.id] = module


def load_modules() -> dict[int, Module]:
    """Load bundled modules keyed by ordinal id."""
    modules: dict[int, Module] = {}
    entries = sorted(resources.files(CONTENT_PACKAGE).iterdir(), key=lambda item: item.name)
    for entry in entries:
        if entry.name.endswith(".json"):
            _add_module(modules, json.loads(entry.read_text(encoding="utf-8-sig")))
    _validate_module_ordinals(modules)
    return dict(sorted(modules.items()))


def load_modules_from_dir(path: Path) -> dict[int, Module]:
    """Load modules from a directory for tests/tools."""
    modules: dict[int, Module] = {}
    for file_path in sorted(path.glob("*.json")):
        _add_module(modules, json.loads(file_path.read_text(encoding="utf-8-sig")))
    _validate_module_ordinals(modules)
    return dict(sorted(modules.items()))


def _validate_module_ordinals(modules: dict[int, Module]) -> None:
    """Validate module ids are exactly 0..n-1 so module k unlocks module k+1."""
    if not modules:
        raise ValueError("Question bank contains no modules.")
    expected = list(range(len(modules)))
    actual = sorted(modules)
    if actual != expected:
        raise ValueError(f"Module ids must be contiguous from 0, got {actual}.")
