"""
Per-connection state kept alongside each websocket.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, Optional, Set

from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .protocol import encode_message

logger = logging.getLogger(__name__)


class ClientConnection:
    """
    Wraps one websocket with the state the relay tracks for it.

    - ``alive``: liveness flag, cleared when a probe is sent and restored
      when the matching pong arrives.
    - ``last_seen``: time of the last inbound message.

    Background close tasks are kept in ``tasks`` until they finish; the
    server passes one set shared by all of its connections.
    """

    def __init__(self, websocket: Any, remote_address: str = "", clock=time.time,
                 tasks: Optional[Set[asyncio.Task]] = None):
        self.websocket = websocket
        self.remote_address = remote_address
        self.clock = clock
        self.alive = True
        self.last_seen = clock()
        self.closed = False
        self._recent: Deque[float] = deque()
        self.tasks = tasks if tasks is not None else set()

    def __repr__(self) -> str:
        return f"<ClientConnection {self.remote_address or id(self)}>"

    @property
    def is_open(self) -> bool:
        return not self.closed and self.websocket.state is State.OPEN

    def touch(self) -> None:
        self.last_seen = self.clock()

    def idle_for(self) -> float:
        return self.clock() - self.last_seen

    def allow(self, limit: int, window: float) -> bool:
        """Sliding-window rate check; records the attempt when allowed."""
        if limit <= 0:
            return True
        now = self.clock()
        while self._recent and now - self._recent[0] >= window:
            self._recent.popleft()
        if len(self._recent) >= limit:
            return False
        self._recent.append(now)
        return True

    async def send_json(self, message: Dict[str, Any]) -> bool:
        """Send one message; returns False if the connection is gone."""
        if not self.is_open:
            return False
        try:
            await self.websocket.send(encode_message(message))
            return True
        except ConnectionClosed:
            self.closed = True
            return False

    def close(self, code: int = 1000, reason: str = "") -> None:
        """Mark closed immediately and close the socket in the background."""
        if self.closed:
            return
        self.closed = True
        task = asyncio.ensure_future(self._close(code, reason))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def _close(self, code: int, reason: str) -> None:
        try:
            await self.websocket.close(code, reason)
        except Exception as e:
            logger.debug("Close failed for %r: %s", self, e)

    def terminate(self) -> None:
        """Drop the connection without a closing handshake."""
        self.closed = True
        transport = getattr(self.websocket, "transport", None)
        if transport is not None:
            transport.abort()

    async def probe(self) -> None:
        """Clear the liveness flag and send a transport-level ping."""
        self.alive = False
        try:
            pong_waiter = await self.websocket.ping()
        except ConnectionClosed:
            self.closed = True
            return
        pong_waiter.add_done_callback(self._on_pong)

    def _on_pong(self, waiter: "asyncio.Future[Optional[float]]") -> None:
        if not waiter.cancelled() and waiter.exception() is None:
            self.alive = True
