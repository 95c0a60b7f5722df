"""
Connection health supervision: heartbeats, liveness probing and registry GC.
"""

import asyncio
import contextlib
import logging
import time
from typing import Callable, Iterable, List

from .connection import ClientConnection
from .protocol import MsgType, SessionKey, make_message, now_ms
from .registry import SessionRegistry
from .relay import RelayRouter

logger = logging.getLogger(__name__)


class ConnectionMonitor:
    """
    Runs three independent periodic jobs.

    - heartbeat: push ``heartbeat`` to every open connection.
    - liveness sweep: terminate connections whose probe went unanswered,
      probe the ones idle beyond ``liveness_threshold``.
    - registry GC: evict entries whose connection closed or whose last
      activity is older than ``stale_timeout``, notifying the peer role.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        router: RelayRouter,
        connections: Callable[[], Iterable[ClientConnection]],
        heartbeat_interval: float = 15,
        liveness_interval: float = 30,
        liveness_threshold: float = 300,
        gc_interval: float = 30,
        stale_timeout: float = 300,
        server_name: str = "couch-remote",
        clock=time.time,
    ) -> None:
        self.registry = registry
        self.router = router
        self.connections = connections
        self.heartbeat_interval = heartbeat_interval
        self.liveness_interval = liveness_interval
        self.liveness_threshold = liveness_threshold
        self.gc_interval = gc_interval
        self.stale_timeout = stale_timeout
        self.server_name = server_name
        self.clock = clock
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(
                self._every(self.heartbeat_interval, self.send_heartbeats), name="heartbeat"
            ),
            asyncio.create_task(
                self._every(self.liveness_interval, self.sweep_liveness), name="liveness-sweep"
            ),
            asyncio.create_task(
                self._every(self.gc_interval, self.sweep_registry), name="registry-gc"
            ),
        ]

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _every(self, interval: float, job) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Monitor job %s failed: %s", job.__name__, exc)

    async def send_heartbeats(self) -> int:
        """Push a heartbeat frame to every open connection."""
        message = make_message(MsgType.HEARTBEAT, timestamp=now_ms(), server=self.server_name)
        sent = 0
        for connection in list(self.connections()):
            if connection.is_open and await connection.send_json(message):
                sent += 1
        return sent

    async def sweep_liveness(self) -> int:
        """Probe idle connections; terminate those that never answered."""
        terminated = 0
        for connection in list(self.connections()):
            if not connection.is_open:
                continue
            if not connection.alive:
                logger.info("Terminating unresponsive connection %r", connection)
                connection.terminate()
                terminated += 1
            elif connection.idle_for() > self.liveness_threshold:
                await connection.probe()
        return terminated

    async def sweep_registry(self) -> List[SessionKey]:
        """Evict closed or stale entries and notify their peers."""
        now = self.clock()
        evicted: List[SessionKey] = []
        for entry in self.registry.entries():
            closed = not entry.connection.is_open
            if closed or now - entry.last_activity > self.stale_timeout:
                key = self.registry.remove_by_connection(entry.connection)
                if key is None:
                    continue
                logger.info("Evicted %s session %s", "closed" if closed else "stale", key)
                if not closed:
                    entry.connection.close(1001, "session expired")
                evicted.append(key)

        for key in evicted:
            await self.router.notify_peers(key.session_id, key.role, MsgType.DEVICE_DISCONNECTED)
        if evicted:
            logger.info("Cleaned up %s inactive sessions", len(evicted))
        return evicted
