"""
Server-less discovery and signaling over a shared local broadcast medium.

A host announces itself, a client scans; once they meet they exchange an
offer, an answer and ICE candidates to open a direct peer channel. All
messages are scoped by a networkId derived from the environment, which is
a namespace tag and not a credential.

State machine::

    IDLE -> ANNOUNCING (host) | SCANNING (client)
         -> OFFERED -> ANSWERED -> CONNECTED
    CONNECTED --channel lost--> ANNOUNCING | SCANNING
"""

import asyncio
import contextlib
import hashlib
import json
import locale
import logging
import platform
import socket
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from .errors import NamespaceMismatch
from .protocol import now_ms

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "couch-remote-discovery"
DEFAULT_DISCOVERY_PORT = 47820
NETWORK_ID_PREFIX = "CR_"

MessageCallback = Callable[[Dict[str, Any]], None]


class DiscoveryType(str, Enum):
    HOST_ANNOUNCEMENT = "host_announcement"
    DISCOVERY_REQUEST = "discovery_request"
    CONNECTION_OFFER = "connection_offer"
    CONNECTION_ANSWER = "connection_answer"
    ICE_CANDIDATE = "ice_candidate"


class DiscoveryState(str, Enum):
    IDLE = "idle"
    ANNOUNCING = "announcing"
    SCANNING = "scanning"
    OFFERED = "offered"
    ANSWERED = "answered"
    CONNECTED = "connected"


class DiscoveryRole(str, Enum):
    HOST = "host"
    CLIENT = "client"

    @property
    def search_state(self) -> DiscoveryState:
        if self is DiscoveryRole.HOST:
            return DiscoveryState.ANNOUNCING
        return DiscoveryState.SCANNING

    @property
    def beacon(self) -> DiscoveryType:
        if self is DiscoveryRole.HOST:
            return DiscoveryType.HOST_ANNOUNCEMENT
        return DiscoveryType.DISCOVERY_REQUEST


# Payload field carried by each message kind, flattened on the wire.
PAYLOAD_FIELDS = {
    DiscoveryType.CONNECTION_OFFER: "offer",
    DiscoveryType.CONNECTION_ANSWER: "answer",
    DiscoveryType.ICE_CANDIDATE: "candidate",
}


@dataclass
class DiscoveryMessage:
    type: DiscoveryType
    network_id: str
    device_name: str = ""
    timestamp: int = field(default_factory=now_ms)
    payload: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type.value,
            "networkId": self.network_id,
            "deviceName": self.device_name,
            "timestamp": self.timestamp,
        }
        name = PAYLOAD_FIELDS.get(self.type)
        if name is not None:
            data[name] = self.payload
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["DiscoveryMessage"]:
        """Parse a wire dict; returns None for anything unrecognised."""
        try:
            kind = DiscoveryType(data.get("type"))
        except ValueError:
            return None
        name = PAYLOAD_FIELDS.get(kind)
        return cls(
            type=kind,
            network_id=str(data.get("networkId", "")),
            device_name=str(data.get("deviceName") or ""),
            timestamp=data.get("timestamp") or now_ms(),
            payload=data.get(name) if name else None,
        )


def default_fingerprint() -> Tuple[str, str]:
    """(user agent, locale) stand-ins for this process."""
    user_agent = f"{platform.system()}/{platform.release()} {platform.machine()} Python/{platform.python_version()}"
    lang = locale.getlocale()[0] or "C"
    return user_agent, lang


def derive_network_id(user_agent: str, lang: str, host: str) -> str:
    """Hash the environment fingerprint into a discovery namespace tag."""
    digest = hashlib.sha256(f"{user_agent}{lang}{host}".encode("utf-8")).hexdigest()
    return NETWORK_ID_PREFIX + digest[:8]


# ---------------------------------------------------------------------------
# Broadcast media
# ---------------------------------------------------------------------------


class BroadcastMedium(Protocol):
    """Shared channel every participant can post to and listen on."""

    def subscribe(self, callback: MessageCallback) -> None: ...

    async def post(self, message: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class LocalBroadcastHub:
    """
    In-process broadcast channels.

    Like a browser BroadcastChannel, a post reaches every other member of
    the same named channel but never the poster itself.
    """

    def __init__(self) -> None:
        self._channels: Dict[str, List["LocalBroadcastMedium"]] = {}

    def channel(self, name: str = DEFAULT_CHANNEL) -> "LocalBroadcastMedium":
        medium = LocalBroadcastMedium(self, name)
        self._channels.setdefault(name, []).append(medium)
        return medium

    def _deliver(self, sender: "LocalBroadcastMedium", message: Dict[str, Any]) -> None:
        for member in list(self._channels.get(sender.name, [])):
            if member is not sender:
                member._receive(dict(message))

    def _leave(self, medium: "LocalBroadcastMedium") -> None:
        members = self._channels.get(medium.name, [])
        if medium in members:
            members.remove(medium)


class LocalBroadcastMedium:
    def __init__(self, hub: LocalBroadcastHub, name: str):
        self.hub = hub
        self.name = name
        self._callbacks: List[MessageCallback] = []

    def subscribe(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    def _receive(self, message: Dict[str, Any]) -> None:
        for callback in list(self._callbacks):
            callback(message)

    async def post(self, message: Dict[str, Any]) -> None:
        self.hub._deliver(self, message)

    async def close(self) -> None:
        self._callbacks.clear()
        self.hub._leave(self)


class _DiscoveryDatagramProtocol(asyncio.DatagramProtocol):
    """Receives JSON discovery datagrams."""

    def __init__(self, medium: "UdpBroadcastMedium"):
        self.medium = medium

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        try:
            packet = json.loads(data.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return
        if not isinstance(packet, dict):
            return
        # Broadcast loops back to the sender
        if packet.pop("origin", None) == self.medium.origin:
            return
        self.medium._receive(packet)

    def error_received(self, exc: Exception) -> None:
        logger.debug("Discovery socket error: %s", exc)


class UdpBroadcastMedium:
    """Discovery namespace carried as UDP broadcast datagrams on the LAN."""

    def __init__(self, port: int = DEFAULT_DISCOVERY_PORT, broadcast_address: str = "255.255.255.255"):
        self.port = port
        self.broadcast_address = broadcast_address
        self.origin = uuid.uuid4().hex
        self._callbacks: List[MessageCallback] = []
        self._transport: Optional[asyncio.DatagramTransport] = None

    async def open(self) -> "UdpBroadcastMedium":
        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.bind(("", self.port))
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _DiscoveryDatagramProtocol(self),
            sock=sock,
        )
        logger.info("Discovery listening on UDP port %s", self.port)
        return self

    def subscribe(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    def _receive(self, message: Dict[str, Any]) -> None:
        for callback in list(self._callbacks):
            callback(message)

    async def post(self, message: Dict[str, Any]) -> None:
        if self._transport is None:
            return
        packet = dict(message, origin=self.origin)
        try:
            self._transport.sendto(json.dumps(packet).encode("utf-8"), (self.broadcast_address, self.port))
        except OSError as e:
            logger.warning("Discovery broadcast failed: %s", e)

    async def close(self) -> None:
        self._callbacks.clear()
        if self._transport is not None:
            self._transport.close()
            self._transport = None


# ---------------------------------------------------------------------------
# Signaler
# ---------------------------------------------------------------------------


class PeerConnector(Protocol):
    """Builds the direct channel; see ``couch_remote.peer.AiortcConnector``."""

    on_open: Optional[Callable[[], None]]
    on_close: Optional[Callable[[], None]]
    on_candidate: Optional[Callable[[Dict[str, Any]], None]]
    on_message: Optional[MessageCallback]

    @property
    def is_open(self) -> bool: ...

    async def create_offer(self) -> Dict[str, Any]: ...

    async def accept_offer(self, offer: Dict[str, Any]) -> Dict[str, Any]: ...

    async def accept_answer(self, answer: Dict[str, Any]) -> None: ...

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None: ...

    async def send_json(self, message: Dict[str, Any]) -> bool: ...

    async def reset(self) -> None: ...

    async def close(self) -> None: ...


class DiscoverySignaler:
    """
    Discovery/signaling state machine for one endpoint.

    Periodic beacons (``host_announcement`` or ``discovery_request``) run
    whenever no direct channel is open; they are the only retry mechanism.
    Every inbound message must carry the local networkId, anything else is
    dropped before it can influence state.
    """

    def __init__(
        self,
        role: DiscoveryRole,
        medium: BroadcastMedium,
        connector: PeerConnector,
        network_id: str,
        device_name: str = "",
        interval: float = 3.0,
        negotiation_timeout: float = 10.0,
        on_state_change: Optional[Callable[[DiscoveryState], None]] = None,
        on_peer_message: Optional[MessageCallback] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.role = DiscoveryRole(role)
        self.medium = medium
        self.connector = connector
        self.network_id = network_id
        self.device_name = device_name or platform.node() or self.role.value
        self.interval = interval
        self.negotiation_timeout = negotiation_timeout
        self.on_state_change = on_state_change
        self.on_peer_message = on_peer_message
        self.clock = clock

        self.state = DiscoveryState.IDLE
        self.hosts: Dict[str, int] = {}
        self._negotiation_started = 0.0
        self._last_offer: Optional[Dict[str, Any]] = None
        self._beacon_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

        connector.on_open = self._channel_opened
        connector.on_close = self._channel_closed
        connector.on_candidate = self._local_candidate
        connector.on_message = self._peer_message
        medium.subscribe(self._on_broadcast)

    # -- lifecycle ---------------------------------------------------------

    @property
    def broadcasting(self) -> bool:
        return self._beacon_task is not None and not self._beacon_task.done()

    @property
    def link(self) -> Optional[PeerConnector]:
        """The open direct channel, usable as an endpoint ``PeerLink``."""
        if self.state is DiscoveryState.CONNECTED and self.connector.is_open:
            return self.connector
        return None

    async def start(self) -> None:
        if self.state is not DiscoveryState.IDLE:
            return
        self._set_state(self.role.search_state)
        self._start_beacon()

    async def stop(self) -> None:
        await self._stop_beacon()
        for task in list(self._pending):
            task.cancel()
        await self.connector.close()
        self._set_state(DiscoveryState.IDLE)

    def _now(self) -> float:
        if self.clock is not None:
            return self.clock()
        return asyncio.get_running_loop().time()

    def _set_state(self, state: DiscoveryState) -> None:
        if state is self.state:
            return
        logger.info("Discovery %s: %s -> %s", self.role.value, self.state.value, state.value)
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    # -- periodic beacon ---------------------------------------------------

    def _start_beacon(self) -> None:
        if not self.broadcasting:
            self._beacon_task = asyncio.create_task(self._beacon_loop(), name=f"discovery-{self.role.value}")

    async def _stop_beacon(self) -> None:
        task, self._beacon_task = self._beacon_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _beacon_loop(self) -> None:
        while self.state is not DiscoveryState.CONNECTED:
            try:
                await self.emit(self.role.beacon)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Discovery beacon failed: %s", exc)
            await asyncio.sleep(self.interval)

    async def emit(self, kind: DiscoveryType, payload: Any = None) -> None:
        message = DiscoveryMessage(
            type=kind,
            network_id=self.network_id,
            device_name=self.device_name,
            payload=payload,
        )
        await self.medium.post(message.to_dict())

    # -- inbound -----------------------------------------------------------

    def admit(self, data: Dict[str, Any]) -> None:
        """Sole admission filter: the message must carry our networkId."""
        if data.get("networkId") != self.network_id:
            raise NamespaceMismatch()

    def _on_broadcast(self, data: Dict[str, Any]) -> None:
        try:
            self.admit(data)
        except NamespaceMismatch:
            return
        self._track(self.handle(data))

    def _track(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def handle(self, data: Dict[str, Any]) -> None:
        """Process one discovery message; arrival order is preserved."""
        try:
            self.admit(data)
        except NamespaceMismatch:
            return
        message = DiscoveryMessage.from_dict(data)
        if message is None:
            return
        async with self._lock:
            if self.state in (DiscoveryState.IDLE, DiscoveryState.CONNECTED):
                return
            try:
                await self._dispatch(message)
            except Exception as exc:
                logger.warning("Discovery %s handling failed: %s", message.type.value, exc)

    async def _dispatch(self, message: DiscoveryMessage) -> None:
        kind = message.type
        if self.role is DiscoveryRole.HOST:
            if kind is DiscoveryType.DISCOVERY_REQUEST:
                await self._offer(message)
            elif kind is DiscoveryType.CONNECTION_ANSWER:
                await self._apply_answer(message)
            elif kind is DiscoveryType.ICE_CANDIDATE:
                await self._apply_candidate(message)
        else:
            if kind is DiscoveryType.HOST_ANNOUNCEMENT:
                self.hosts[message.device_name] = message.timestamp
            elif kind is DiscoveryType.CONNECTION_OFFER:
                await self._answer(message)
            elif kind is DiscoveryType.ICE_CANDIDATE:
                await self._apply_candidate(message)

    async def _offer(self, message: DiscoveryMessage) -> None:
        if self.state is not DiscoveryState.ANNOUNCING:
            if self._now() - self._negotiation_started < self.negotiation_timeout:
                return
            logger.info("Negotiation timed out, offering again")
            await self.connector.reset()
        logger.info("Discovery request from %s", message.device_name or "unknown device")
        offer = await self.connector.create_offer()
        self._negotiation_started = self._now()
        self._set_state(DiscoveryState.OFFERED)
        await self.emit(DiscoveryType.CONNECTION_OFFER, offer)

    async def _answer(self, message: DiscoveryMessage) -> None:
        offer = message.payload
        if not isinstance(offer, dict) or offer == self._last_offer:
            return
        if self.state is not DiscoveryState.SCANNING:
            await self.connector.reset()
        logger.info("Offer received from %s", message.device_name or "unknown host")
        answer = await self.connector.accept_offer(offer)
        self._last_offer = offer
        self._negotiation_started = self._now()
        self._set_state(DiscoveryState.ANSWERED)
        await self.emit(DiscoveryType.CONNECTION_ANSWER, answer)

    async def _apply_answer(self, message: DiscoveryMessage) -> None:
        if self.state is not DiscoveryState.OFFERED or not isinstance(message.payload, dict):
            return
        await self.connector.accept_answer(message.payload)
        self._set_state(DiscoveryState.ANSWERED)

    async def _apply_candidate(self, message: DiscoveryMessage) -> None:
        if isinstance(message.payload, dict):
            await self.connector.add_ice_candidate(message.payload)

    # -- connector callbacks -----------------------------------------------

    def _local_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.state in (DiscoveryState.IDLE, DiscoveryState.CONNECTED):
            return
        self._track(self.emit(DiscoveryType.ICE_CANDIDATE, candidate))

    def _peer_message(self, message: Dict[str, Any]) -> None:
        if self.on_peer_message is not None:
            self.on_peer_message(message)

    def _channel_opened(self) -> None:
        self._track(self._on_connected())

    def _channel_closed(self) -> None:
        self._track(self._on_disconnected())

    async def _on_connected(self) -> None:
        if self.state is DiscoveryState.IDLE:
            return
        self._set_state(DiscoveryState.CONNECTED)
        await self._stop_beacon()
        self._last_offer = None

    async def _on_disconnected(self) -> None:
        if self.state is not DiscoveryState.CONNECTED:
            return
        logger.info("Direct channel lost, resuming %s", self.role.search_state.value)
        self._set_state(self.role.search_state)
        await self.connector.reset()
        self._start_beacon()
