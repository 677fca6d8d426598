"""Fire-and-forget analytics events."""

from __future__ import annotations

import logging
import sqlite3
from typing import Protocol

from .progress import ProgressStore

logger = logging.getLogger(__name__)

MODULE_STARTED = "module_started"
MODULE_COMPLETED = "module_completed"
AUTH_PROMPT_SHOWN = "auth_prompt_shown"
AUTH_PROMPT_DISMISSED = "auth_prompt_dismissed"
GUEST_USER_LOADED = "guest_user_loaded"
GUEST_INITIALIZATION_ERROR = "guest_initialization_error"
GUEST_MIGRATED = "guest_migrated"
GUEST_MIGRATION_FAILED = "guest_migration_failed"
ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
PROGRESS_RESET = "progress_reset"


class TelemetrySink(Protocol):
    """Receives named events; must not raise into the caller."""

    def emit(self, name: str, payload: dict[str, object]) -> None: ...


class LoggingTelemetrySink:
    """Writes events to the `ifrs17trainer.telemetry` logger."""

    def emit(self, name: str, payload: dict[str, object]) -> None:
        logger.info("event %s %s", name, payload)


class LocalTelemetryLog:
    """Keeps the most recent events in the local progress store."""

    def __init__(self, store: ProgressStore) -> None:
        self.store = store

    def emit(self, name: str, payload: dict[str, object]) -> None:
        identity_key = payload.get("identity")
        try:
            self.store.record_event(name, payload, identity_key if isinstance(identity_key, str) else None)
        except (sqlite3.Error, TypeError, ValueError):
            logger.warning("Could not record telemetry event %s", name, exc_info=True)


class FanoutTelemetrySink:
    """Forwards each event to several sinks; one failing sink does not stop the others."""

    def __init__(self, *sinks: TelemetrySink) -> None:
        self.sinks = sinks

    def emit(self, name: str, payload: dict[str, object]) -> None:
        for sink in self.sinks:
            try:
                sink.emit(name, payload)
            except Exception:
                logger.warning("Telemetry sink %r failed for %s", sink, name, exc_info=True)
