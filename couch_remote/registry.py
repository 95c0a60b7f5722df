"""
Session registry: the single store of live endpoint connections.

Only the event loop that owns the server touches it; all operations are
synchronous so no await can interleave inside a mutation.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from .connection import ClientConnection
from .errors import RegistryFull
from .protocol import Role, SessionKey, StatusSnapshot

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class SessionEntry:
    key: SessionKey
    connection: ClientConnection
    last_activity: float = field(default_factory=time.time)
    status: Optional[StatusSnapshot] = None
    # Key this connection held before re-registering under ``key``
    moved_from: Optional[SessionKey] = None

    def to_listing(self) -> Dict[str, Any]:
        return {
            "sessionId": self.key.session_id,
            "deviceType": self.key.role.value,
            "connected": self.connection.is_open,
            "lastActivity": int(self.last_activity * 1000),
            "status": self.status.to_dict() if self.status else {},
        }


class SessionRegistry:
    """Keyed store enforcing at most one connection per (session, role)."""

    def __init__(self, max_sessions: int = 0, clock=time.time):
        self.max_sessions = max_sessions
        self.clock = clock
        self._entries: Dict[SessionKey, SessionEntry] = {}
        self._by_connection: Dict[ClientConnection, SessionKey] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: SessionKey) -> bool:
        return key in self._entries

    def register(self, session_id: Any, role: Any, connection: ClientConnection) -> SessionEntry:
        """
        Register ``connection`` under (session_id, role).

        Any prior connection for the same key is closed and replaced. If
        ``connection`` was registered under another key it moves, and the
        abandoned key is reported as ``entry.moved_from``.

        Raises:
            InvalidRegistration: sessionId or role missing/malformed.
            RegistryFull: a new key would exceed ``max_sessions``.
        """
        key = SessionKey.create(session_id, role)

        if (
            self.max_sessions
            and key not in self._entries
            and self._by_connection.get(connection) is None
            and len(self._entries) >= self.max_sessions
        ):
            raise RegistryFull()

        previous = self._entries.pop(key, None)
        if previous is not None:
            self._by_connection.pop(previous.connection, None)
            if previous.connection is not connection:
                logger.info("Replacing connection for %s", key)
                previous.connection.close(1000, "replaced")

        moved_from = None
        old_key = self._by_connection.pop(connection, None)
        if old_key is not None and old_key != key:
            self._entries.pop(old_key, None)
            moved_from = old_key
            logger.info("Session moved: %s -> %s", old_key, key)

        entry = SessionEntry(key=key, connection=connection, last_activity=self.clock(),
                             moved_from=moved_from)
        if previous is not None and previous.status is not None:
            entry.status = previous.status
        self._entries[key] = entry
        self._by_connection[connection] = key
        logger.info("Session registered: %s", key)
        return entry

    def lookup(self, session_id: str, role: Role) -> Optional[SessionEntry]:
        return self._entries.get(SessionKey(session_id, Role(role)))

    def lookup_peer(self, session_id: str, role: Role) -> Optional[SessionEntry]:
        return self._entries.get(SessionKey(session_id, Role(role).peer))

    def lookup_connection(self, connection: ClientConnection) -> Optional[SessionEntry]:
        key = self._by_connection.get(connection)
        return self._entries.get(key) if key else None

    def remove_by_connection(self, connection: ClientConnection) -> Optional[SessionKey]:
        """Delete the entry owned by ``connection``; returns its key or None."""
        key = self._by_connection.pop(connection, None)
        if key is None:
            return None
        self._entries.pop(key, None)
        logger.info("Session removed: %s", key)
        return key

    def touch(self, connection: ClientConnection) -> None:
        entry = self.lookup_connection(connection)
        if entry is not None:
            entry.last_activity = self.clock()

    def entries(self) -> List[SessionEntry]:
        return list(self._entries.values())

    def __iter__(self) -> Iterator[SessionEntry]:
        return iter(self.entries())

    def listing(self) -> List[Dict[str, Any]]:
        """Rows for the read-only admin surface and ``session_list``."""
        return [entry.to_listing() for entry in self._entries.values()]
