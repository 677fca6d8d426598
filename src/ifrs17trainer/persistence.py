"""Persistence gateway over the local store and the optional remote backend."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import TypeVar

from .engine import ModuleResult
from .identity import AuthenticatedIdentity, Identity
from .models import Leaderboard, LeaderboardEntry
from .progress import ProgressStore
from .remote import RemoteStore

logger = logging.getLogger(__name__)

LOCAL_ERRORS = (sqlite3.Error, OSError, TypeError, ValueError)
T = TypeVar("T")


class PersistenceGateway:
    """Saves, loads and clears snapshots per identity.

    Local writes always happen; authenticated identities are mirrored to the
    remote store. Failures are logged and reported through return values,
    never raised.
    """

    def __init__(self, local: ProgressStore, remote: RemoteStore | None = None) -> None:
        self.local = local
        self.remote = remote
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, identity: Identity) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(identity.key, threading.Lock())

    def _remote_for(self, identity: Identity) -> RemoteStore | None:
        if isinstance(identity, AuthenticatedIdentity):
            return self.remote
        return None

    def save(self, identity: Identity, payload: dict[str, object]) -> bool:
        """Write a snapshot; succeeds when at least one store accepted it."""
        with self._lock_for(identity):
            local_ok = True
            try:
                self.local.save_snapshot(identity.key, payload)
            except LOCAL_ERRORS:
                local_ok = False
                logger.warning("Local save failed for %s", identity.key, exc_info=True)

            remote = self._remote_for(identity)
            if remote is None or not isinstance(identity, AuthenticatedIdentity):
                return local_ok
            try:
                remote.save_snapshot(identity.user_id, payload)
            except Exception:
                logger.warning("Remote save failed for %s; keeping local copy", identity.key, exc_info=True)
                return local_ok
            return True

    def load(self, identity: Identity) -> dict[str, object] | None:
        """Read a snapshot, preferring the remote copy for authenticated identities."""
        with self._lock_for(identity):
            remote = self._remote_for(identity)
            if remote is not None and isinstance(identity, AuthenticatedIdentity):
                try:
                    payload = remote.load_snapshot(identity.user_id)
                except Exception:
                    logger.warning("Remote load failed for %s; falling back to local", identity.key, exc_info=True)
                else:
                    if payload is not None:
                        return payload
            return self.load_local(identity)

    def load_local(self, identity: Identity) -> dict[str, object] | None:
        try:
            return self.local.load_snapshot(identity.key)
        except LOCAL_ERRORS:
            logger.warning("Local load failed for %s", identity.key, exc_info=True)
            return None

    def load_remote(self, identity: AuthenticatedIdentity) -> dict[str, object] | None:
        """Read only the remote copy; raises when the remote call fails."""
        if self.remote is None:
            return None
        return self.remote.load_snapshot(identity.user_id)

    def clear(self, identity: Identity) -> bool:
        """Delete every persisted copy for an identity."""
        with self._lock_for(identity):
            ok = True
            try:
                self.local.delete_snapshot(identity.key)
            except LOCAL_ERRORS:
                ok = False
                logger.warning("Local clear failed for %s", identity.key, exc_info=True)
            remote = self._remote_for(identity)
            if remote is not None and isinstance(identity, AuthenticatedIdentity):
                try:
                    remote.clear_snapshot(identity.user_id)
                except Exception:
                    ok = False
                    logger.warning("Remote clear failed for %s", identity.key, exc_info=True)
            return ok

    def submit_module_result(self, identity: Identity, result: ModuleResult, module_title: str) -> bool:
        """Report a module completion to the leaderboard backend (authenticated only)."""
        remote = self._remote_for(identity)
        if remote is None or not isinstance(identity, AuthenticatedIdentity):
            return False
        try:
            remote.submit_module_result(identity.user_id, result, module_title)
        except Exception:
            logger.warning("Module result submission failed for %s", identity.key, exc_info=True)
            return False
        logger.info("Submitted module %s result for %s", result.module_id, identity.key)
        return True

    def leaderboard(self, identity: Identity, module_id: int | None = None, limit: int = 50) -> Leaderboard:
        """Read the overall or a module leaderboard; empty when the backend is unavailable.

        Guests see the board without a position of their own.
        """
        if self.remote is None:
            return Leaderboard()
        user_id = identity.user_id if isinstance(identity, AuthenticatedIdentity) else None
        try:
            if module_id is None:
                return self.remote.overall_leaderboard(user_id, limit)
            return self.remote.module_leaderboard(module_id, user_id, limit)
        except Exception:
            logger.warning("Leaderboard read failed (module %s)", module_id, exc_info=True)
            return Leaderboard()

    def user_rank(self, identity: Identity) -> int | None:
        remote = self._remote_for(identity)
        if remote is None or not isinstance(identity, AuthenticatedIdentity):
            return None
        try:
            return remote.user_rank(identity.user_id)
        except Exception:
            logger.warning("Rank read failed for %s", identity.key, exc_info=True)
            return None

    def module_performance(self, identity: Identity) -> list[LeaderboardEntry]:
        remote = self._remote_for(identity)
        if remote is None or not isinstance(identity, AuthenticatedIdentity):
            return []
        try:
            return remote.module_performance(identity.user_id)
        except Exception:
            logger.warning("Module performance read failed for %s", identity.key, exc_info=True)
            return []


class SnapshotWriter:
    """Runs gateway writes on one background worker.

    Saves for the same identity are coalesced: only the newest pending snapshot
    is written. Work runs in submission order, so a clear is never overtaken by
    an older save, and a save submitted after a clear is written after it.
    """

    def __init__(self, gateway: PersistenceGateway, executor: Executor | None = None) -> None:
        self.gateway = gateway
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="snapshot-writer")
        self._pending: dict[str, tuple[Identity, dict[str, object]]] = {}
        self._scheduled: set[tuple[str, int]] = set()
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()

    def submit(self, identity: Identity, payload: dict[str, object]) -> None:
        """Queue a snapshot save, replacing any not-yet-written one for the same identity."""
        key = identity.key
        with self._lock:
            self._pending[key] = (identity, payload)
            slot = (key, self._generations.get(key, 0))
            if slot in self._scheduled:
                return
            self._scheduled.add(slot)
            self._executor.submit(self._drain, *slot)

    def clear(self, identity: Identity) -> Future[bool]:
        """Drop unwritten saves for an identity and queue deletion of its persisted copies."""
        key = identity.key
        with self._lock:
            self._pending.pop(key, None)
            # Drains queued before the clear must not write saves submitted after it.
            self._generations[key] = self._generations.get(key, 0) + 1
            return self._executor.submit(self.gateway.clear, identity)

    def call(self, fn: Callable[..., T], *args: object) -> Future[T]:
        """Queue another gateway call behind pending writes."""
        return self._executor.submit(fn, *args)

    def flush(self, timeout: float | None = None) -> None:
        """Block until all previously queued work has run."""
        self._executor.submit(lambda: None).result(timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _drain(self, key: str, generation: int) -> None:
        with self._lock:
            self._scheduled.discard((key, generation))
            if self._generations.get(key, 0) != generation:
                return
            item = self._pending.pop(key, None)
        if item is None:
            return
        identity, payload = item
        if not self.gateway.save(identity, payload):
            logger.warning("Snapshot for %s was not persisted", key)
