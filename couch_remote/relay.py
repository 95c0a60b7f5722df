"""
Relay routing between the "pc" and "mobile" endpoints of a session.

Delivery is at-most-once and fire-and-forget: an unavailable peer is
logged and the message dropped, the sender is never told.
"""

import logging
from typing import Any, Dict, Optional

from .errors import PeerUnavailable
from .protocol import MsgType, Role, StatusSnapshot, make_message
from .registry import SessionEntry, SessionRegistry

logger = logging.getLogger(__name__)


class RelayRouter:
    """Forwards control and status messages between same-session roles."""

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    async def _deliver(self, entry: Optional[SessionEntry], session_id: str,
                       role: Role, message: Dict[str, Any]) -> bool:
        try:
            if entry is None or not entry.connection.is_open:
                raise PeerUnavailable(f"{role.value} not connected for session {session_id}")
            if not await entry.connection.send_json(message):
                raise PeerUnavailable(f"{role.value} connection closed for session {session_id}")
        except PeerUnavailable as e:
            logger.info("Dropped %s: %s", message.get("type"), e.message)
            return False
        return True

    async def forward(self, session_id: str, command: Any) -> bool:
        """Deliver ``command`` verbatim to the session's "pc" endpoint."""
        entry = self.registry.lookup(session_id, Role.PC)
        message = make_message(MsgType.REMOTE_COMMAND, command=command)
        delivered = await self._deliver(entry, session_id, Role.PC, message)
        if delivered:
            kind = command.get("type") if isinstance(command, dict) else command
            logger.debug("Command forwarded: %s -> %s", session_id, kind)
        return delivered

    async def update_status(self, session_id: str, status: StatusSnapshot) -> bool:
        """Store ``status`` as the latest snapshot and push it to "mobile"."""
        pc = self.registry.lookup(session_id, Role.PC)
        if pc is not None:
            pc.status = status
        mobile = self.registry.lookup(session_id, Role.MOBILE)
        message = make_message(MsgType.STATUS_UPDATE, sessionId=session_id, **status.to_dict())
        return await self._deliver(mobile, session_id, Role.MOBILE, message)

    async def notify_peers(self, session_id: str, role: Role, event_type: MsgType) -> bool:
        """Tell the other role that ``role`` connected or disconnected."""
        role = Role(role)
        peer = self.registry.lookup_peer(session_id, role)
        if peer is None or not peer.connection.is_open:
            return False
        return await peer.connection.send_json(make_message(event_type, deviceType=role.value))

    async def replay_status(self, session_id: str) -> bool:
        """Send the stored snapshot to a freshly registered "mobile"."""
        pc = self.registry.lookup(session_id, Role.PC)
        mobile = self.registry.lookup(session_id, Role.MOBILE)
        if pc is None or pc.status is None or mobile is None:
            return False
        message = make_message(MsgType.STATUS_UPDATE, sessionId=session_id, **pc.status.to_dict())
        return await mobile.connection.send_json(message)
