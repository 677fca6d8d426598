"""Guest and authenticated identities plus the session boundary that supplies them."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

logger = logging.getLogger(__name__)

GUEST_NAME = "Guest User"
FALLBACK_GUEST_PREFIX = "guest_fallback_"


@dataclass(frozen=True)
class GuestIdentity:
    """Ephemeral local identity allowed to try the guest modules before sign-up."""

    id: str
    name: str = GUEST_NAME
    created_at: str = ""

    @property
    def key(self) -> str:
        return f"guest:{self.id}"

    @property
    def is_guest(self) -> bool:
        return True

    @property
    def variant(self) -> str | None:
        return None

    @property
    def is_fallback(self) -> bool:
        return self.id.startswith(FALLBACK_GUEST_PREFIX)


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Identity resolved by the external auth provider.

    `variant` is an optional presentation attribute used only for achievement
    display text.
    """

    user_id: str
    name: str
    email: str | None = None
    variant: str | None = None

    @property
    def key(self) -> str:
        return f"user:{self.user_id}"

    @property
    def is_guest(self) -> bool:
        return False


Identity = GuestIdentity | AuthenticatedIdentity
IdentityHandler = Callable[[Identity | None], None]


class GuestRecordStore(Protocol):
    """Local storage for the single persisted guest identity."""

    def load_guest(self) -> GuestIdentity | None: ...

    def save_guest(self, guest: GuestIdentity) -> None: ...

    def clear_guest(self) -> None: ...


def new_guest_id() -> str:
    return f"guest_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def fallback_guest() -> GuestIdentity:
    """Minimal guest used when the local guest record cannot be created or read."""
    guest_id = f"{FALLBACK_GUEST_PREFIX}{int(time.time() * 1000)}"
    return GuestIdentity(id=guest_id, created_at=datetime.now(UTC).isoformat())


def resolve_guest(store: GuestRecordStore) -> tuple[GuestIdentity, bool]:
    """Load the stored guest or create one.

    Returns (guest, created). Never raises: storage errors yield a synthesized
    fallback guest reported as created.
    """
    try:
        existing = store.load_guest()
        if existing is not None:
            return (existing, False)
        guest = GuestIdentity(id=new_guest_id(), created_at=datetime.now(UTC).isoformat())
        store.save_guest(guest)
        logger.info("Created guest identity %s", guest.id)
        return (guest, True)
    except Exception:
        logger.exception("Could not resolve guest identity; using fallback guest")
        return (fallback_guest(), True)


class IdentityBoundary(Protocol):
    """Source of the current identity, owned by the authentication layer."""

    def current_identity(self) -> Identity | None: ...

    def on_identity_change(self, handler: IdentityHandler) -> None: ...

    def sign_out(self) -> None: ...


class LocalIdentityBoundary:
    """In-process identity boundary; sign-in is performed by the caller."""

    def __init__(self, identity: Identity | None = None) -> None:
        self._identity = identity
        self._handlers: list[IdentityHandler] = []
        self._lock = threading.Lock()

    def current_identity(self) -> Identity | None:
        return self._identity

    def on_identity_change(self, handler: IdentityHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def sign_in(self, identity: AuthenticatedIdentity) -> None:
        """Switch to an authenticated identity and notify listeners."""
        self._set(identity)

    def sign_out(self) -> None:
        self._set(None)

    def _set(self, identity: Identity | None) -> None:
        with self._lock:
            if identity == self._identity:
                return
            self._identity = identity
            handlers = list(self._handlers)
        for handler in handlers:
            handler(identity)
