"""SQLite local store for progression snapshots, the guest record and telemetry."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import cast

from .identity import GuestIdentity

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
MAX_TELEMETRY_EVENTS = 100
MEMORY_DB = ":memory:"


class ProgressStore:
    """Local persistence layer; always available, synchronous."""

    def __init__(self, db_path: Path | str) -> None:
        """Open the database and apply schema migrations."""
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        else:
            target = db_path
        self.in_memory = target == MEMORY_DB
        self._conn = sqlite3.connect(target, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._apply_migrations()

    def _apply_migrations(self) -> None:
        """Apply forward-only schema migrations to latest version."""
        current = int(self._conn.execute("PRAGMA user_version").fetchone()[0])
        if current > SCHEMA_VERSION:
            raise RuntimeError(f"Database schema version {current} is newer than supported {SCHEMA_VERSION}.")

        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """)

        for version in range(current + 1, SCHEMA_VERSION + 1):
            if version == 1:
                self._migrate_to_v1()
            elif version == 2:
                self._migrate_to_v2()
            with self._conn:
                self._conn.execute(f"PRAGMA user_version = {version}")
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now(UTC).isoformat()),
                )

    def _migrate_to_v1(self) -> None:
        """Create snapshot and guest identity tables."""
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    identity_key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    snapshot_version INTEGER NOT NULL,
                    saved_at TEXT NOT NULL
                )
                """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS guest_identity (
                    slot INTEGER PRIMARY KEY CHECK (slot = 1),
                    guest_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """)

    def _migrate_to_v2(self) -> None:
        """Add the local telemetry event log."""
        with self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS telemetry_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    identity_key TEXT,
                    name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """)

    def save_snapshot(self, identity_key: str, payload: dict[str, object]) -> None:
        """Insert or replace the snapshot for one identity in a single statement."""
        version = payload.get("snapshot_version", 0)
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO snapshots (identity_key, payload, snapshot_version, saved_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(identity_key) DO UPDATE SET
                    payload = excluded.payload,
                    snapshot_version = excluded.snapshot_version,
                    saved_at = excluded.saved_at
                """,
                (
                    identity_key,
                    json.dumps(payload),
                    int(version) if isinstance(version, int) else 0,
                    datetime.now(UTC).isoformat(),
                ),
            )

    def load_snapshot(self, identity_key: str) -> dict[str, object] | None:
        """Return the stored snapshot for an identity if present."""
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM snapshots WHERE identity_key = ?", (identity_key,)
            ).fetchone()
        if row is None:
            return None
        raw: object = json.loads(str(row["payload"]))
        if not isinstance(raw, dict):
            raise ValueError(f"Stored snapshot for {identity_key} is not a JSON object.")
        return cast(dict[str, object], raw)

    def delete_snapshot(self, identity_key: str) -> bool:
        """Delete one identity's snapshot."""
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM snapshots WHERE identity_key = ?", (identity_key,))
        return cursor.rowcount > 0

    def snapshot_keys(self) -> list[str]:
        """Return identity keys with a stored snapshot."""
        with self._lock:
            rows = self._conn.execute("SELECT identity_key FROM snapshots ORDER BY identity_key").fetchall()
        return [str(row["identity_key"]) for row in rows]

    def load_guest(self) -> GuestIdentity | None:
        """Return the persisted guest identity if one exists."""
        with self._lock:
            row = self._conn.execute("SELECT guest_id, name, created_at FROM guest_identity WHERE slot = 1").fetchone()
        if row is None:
            return None
        return GuestIdentity(id=str(row["guest_id"]), name=str(row["name"]), created_at=str(row["created_at"]))

    def save_guest(self, guest: GuestIdentity) -> None:
        """Persist the guest identity, replacing any previous one."""
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO guest_identity (slot, guest_id, name, created_at) VALUES (1, ?, ?, ?)",
                (guest.id, guest.name, guest.created_at or datetime.now(UTC).isoformat()),
            )

    def clear_guest(self) -> None:
        """Remove the guest identity and its snapshot."""
        guest = self.load_guest()
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM guest_identity")
            if guest is not None:
                self._conn.execute("DELETE FROM snapshots WHERE identity_key = ?", (guest.key,))

    def record_event(self, name: str, payload: dict[str, object], identity_key: str | None = None) -> None:
        """Append one telemetry event, keeping only the newest MAX_TELEMETRY_EVENTS rows."""
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO telemetry_events (identity_key, name, payload, created_at) VALUES (?, ?, ?, ?)",
                (identity_key, name, json.dumps(payload, default=str), datetime.now(UTC).isoformat()),
            )
            self._conn.execute(
                """
                DELETE FROM telemetry_events
                WHERE id NOT IN (SELECT id FROM telemetry_events ORDER BY id DESC LIMIT ?)
                """,
                (MAX_TELEMETRY_EVENTS,),
            )

    def list_events(self, limit: int = MAX_TELEMETRY_EVENTS) -> list[dict[str, object]]:
        """Return recent telemetry events, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT identity_key, name, payload, created_at
                FROM (SELECT * FROM telemetry_events ORDER BY id DESC LIMIT ?)
                ORDER BY id ASC
                """,
                (limit,),
            ).fetchall()
        return [
            {
                "identity_key": row["identity_key"],
                "name": str(row["name"]),
                "payload": json.loads(str(row["payload"])),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]

    def close(self) -> None:
        """Close db connection."""
        self._conn.close()

    def __del__(self) -> None:  # pragma: no cover
        """Best-effort connection cleanup."""
        try:
            self.close()
        except Exception:
            pass


def open_store(db_path: Path | str) -> ProgressStore:
    """Open the local store, degrading to an in-memory database when the file cannot be used."""
    try:
        return ProgressStore(db_path)
    except (sqlite3.Error, OSError, RuntimeError):
        logger.warning("Local progress store %s unavailable; progress will not survive restart", db_path, exc_info=True)
        return ProgressStore(MEMORY_DB)
