"""Live presence registry for the RRP hub.

Maps each open connection handle to the identity it announced. This is the
only mutable state shared between connection callbacks, so every operation
takes the registry lock for its own duration and hands out copies.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import DuplicateHandle

if TYPE_CHECKING:
    from .session import Connection


@dataclass(frozen=True)
class UserIdentity:
    name: str
    email: str
    avatar: str = ""


@dataclass(frozen=True)
class PresenceEntry:
    handle: Connection
    identity: UserIdentity


class ConnectionRegistry:
    """Thread-safe mapping of connection handle -> announced identity.

    Iteration order is insertion order, so lookups and snapshots are
    deterministic. Several handles may share one email.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[Connection, UserIdentity] = {}

    def insert(self, handle: Connection, identity: UserIdentity) -> None:
        with self._lock:
            if handle in self._entries:
                raise DuplicateHandle(f"handle {handle.conn_id} already registered")
            self._entries[handle] = identity

    def remove(self, handle: Connection) -> PresenceEntry | None:
        with self._lock:
            identity = self._entries.pop(handle, None)
        if identity is None:
            return None
        return PresenceEntry(handle, identity)

    def lookup(self, handle: Connection) -> UserIdentity | None:
        with self._lock:
            return self._entries.get(handle)

    def find_by_email(self, email: str) -> list[tuple[Connection, UserIdentity]]:
        with self._lock:
            return [(h, ident) for h, ident in self._entries.items() if ident.email == email]

    def snapshot_others(self, excluding: Connection | None) -> list[UserIdentity]:
        with self._lock:
            return [ident for h, ident in self._entries.items() if h is not excluding]

    def entries(self) -> list[PresenceEntry]:
        with self._lock:
            return [PresenceEntry(h, ident) for h, ident in self._entries.items()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, handle: object) -> bool:
        with self._lock:
            return handle in self._entries

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            emails = {ident.email for ident in self._entries.values()}
            return {
                "present": len(self._entries),
                "unique_users": len(emails),
            }
