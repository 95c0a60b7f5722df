"""
Endpoint side of a session: a relay socket plus routing that prefers an
open direct channel.

A message sent over the direct channel has the same shape the relay
would deliver, so the receiving endpoint cannot tell the paths apart.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Protocol

from websockets.asyncio.client import ClientConnection as WebSocketClient, connect
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .errors import PeerUnavailable, RemoteError
from .protocol import (
    MsgType,
    SessionKey,
    StatusSnapshot,
    decode_message,
    encode_message,
    make_message,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Dict[str, Any]], None]


class PeerLink(Protocol):
    """Anything that can carry one JSON message to the other endpoint."""

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, message: Dict[str, Any]) -> bool: ...


class RelayClient:
    """
    One endpoint's WebSocket to the relay server.

    Registers as soon as the socket opens and hands every decoded frame to
    ``on_message``. Server heartbeats are answered so the registry entry
    stays fresh.
    """

    def __init__(self, url: str, session_id: str, role: Any,
                 on_message: Optional[MessageCallback] = None):
        self.url = url
        self.key = SessionKey.create(session_id, role)
        self.on_message = on_message
        self.websocket: Optional[WebSocketClient] = None
        self._reader: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self.websocket is not None and self.websocket.state is State.OPEN

    async def connect(self) -> "RelayClient":
        self.websocket = await connect(self.url)
        await self.send_json(make_message(
            MsgType.REGISTER, sessionId=self.key.session_id, deviceType=self.key.role.value,
        ))
        self._reader = asyncio.create_task(self._read())
        logger.info("Relay connected: %s as %s", self.url, self.key)
        return self

    async def _read(self) -> None:
        try:
            async for raw in self.websocket:
                try:
                    message = decode_message(raw)
                except RemoteError as e:
                    logger.warning("Ignoring relay frame: %s", e.message)
                    continue
                if message.get("type") == MsgType.HEARTBEAT.value:
                    await self.send_json(make_message(MsgType.HEARTBEAT))
                    continue
                if self.on_message:
                    self.on_message(message)
        except ConnectionClosed as e:
            logger.info("Relay connection lost: %s", e)

    async def send_json(self, message: Dict[str, Any]) -> bool:
        if not self.is_open:
            return False
        try:
            await self.websocket.send(encode_message(message))
            return True
        except ConnectionClosed:
            return False

    async def close(self) -> None:
        if self.websocket is not None:
            await self.websocket.close()
        if self._reader is not None:
            await self._reader
            self._reader = None


class EndpointRouter:
    """
    Sends this endpoint's commands and status to its peer.

    While ``link()`` returns an open direct channel, messages go over it;
    otherwise they go through the relay as ``control_command`` and
    ``status_update`` requests. Without a relay only the direct channel
    is tried.
    """

    def __init__(self, session_id: str, role: Any, relay: Optional[PeerLink],
                 link: Callable[[], Optional[PeerLink]] = lambda: None):
        self.key = SessionKey.create(session_id, role)
        self.relay = relay
        self.link = link

    async def _deliver(self, direct: Dict[str, Any], relayed: Dict[str, Any]) -> bool:
        link = self.link()
        if link is not None and link.is_open and await link.send_json(direct):
            return True
        try:
            if self.relay is None or not await self.relay.send_json(relayed):
                raise PeerUnavailable("neither direct channel nor relay is open")
        except PeerUnavailable as e:
            logger.info("Dropped %s: %s", direct.get("type"), e.message)
            return False
        return True

    async def send_command(self, command: Any) -> bool:
        """Deliver ``command`` to the "pc" endpoint (mobile side)."""
        direct = make_message(MsgType.REMOTE_COMMAND, command=command)
        relayed = make_message(MsgType.CONTROL_COMMAND, sessionId=self.key.session_id, command=command)
        return await self._deliver(direct, relayed)

    async def send_status(self, status: StatusSnapshot) -> bool:
        """Deliver ``status`` to the "mobile" endpoint (pc side)."""
        message = make_message(MsgType.STATUS_UPDATE, sessionId=self.key.session_id, **status.to_dict())
        return await self._deliver(message, message)
