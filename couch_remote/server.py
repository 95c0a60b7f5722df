"""
Relay server for Couch Remote.
Pairs "pc" and "mobile" endpoints over WebSocket and exposes a small
read-only HTTP admin surface.
"""

import asyncio
import ipaddress
import logging
import signal
import time
from http import HTTPStatus
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from aiohttp import web
from websockets.asyncio.server import Server, ServerConnection, serve as ws_serve
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request, Response

from . import __version__
from .config import Config, get_config, get_local_ip
from .connection import ClientConnection
from .errors import MalformedMessage, RateLimited, RemoteError, TransportFailure
from .monitor import ConnectionMonitor
from .protocol import (
    MsgType,
    Role,
    StatusSnapshot,
    decode_message,
    make_message,
    message_type,
    now_ms,
)
from .registry import SessionRegistry
from .relay import RelayRouter

logger = logging.getLogger(__name__)

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
Handler = Callable[[ClientConnection, dict], Awaitable[None]]


def parse_networks(networks: Iterable[str]) -> List[Network]:
    return [ipaddress.ip_network(net, strict=False) for net in networks]


def is_allowed_address(host: str, networks: List[Network]) -> bool:
    """True if ``host`` falls inside one of the allowed networks."""
    if not host:
        return False
    try:
        address = ipaddress.ip_address(host.split("%", 1)[0])
    except ValueError:
        return False
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    return any(address.version == net.version and address in net for net in networks)


class CouchRemoteServer:
    """
    WebSocket relay between paired "pc" and "mobile" endpoints.

    Features:
    - Session registry with one connection per (session, role)
    - Command and status relay, connect/disconnect notifications
    - Heartbeats, liveness probing and stale-session cleanup
    - Private-network origin filter and per-connection rate limit
    """

    def __init__(self, config: Optional[Config] = None, clock=time.time):
        """Initialize the server."""
        self.config = config or get_config()
        self.clock = clock

        # Track active WebSocket connections
        self.clients: Set[ClientConnection] = set()
        # Pending background closes of those connections
        self.close_tasks: Set[asyncio.Task] = set()

        self.registry = SessionRegistry(max_sessions=self.config.max_sessions, clock=clock)
        self.router = RelayRouter(self.registry)
        self.monitor = ConnectionMonitor(
            self.registry,
            self.router,
            lambda: self.clients,
            heartbeat_interval=self.config.heartbeat_interval,
            liveness_interval=self.config.liveness_interval,
            liveness_threshold=self.config.liveness_threshold,
            gc_interval=self.config.gc_interval,
            stale_timeout=self.config.stale_timeout,
            server_name=self.config.server_name,
            clock=clock,
        )
        self._networks = parse_networks(self.config.allowed_networks)

        # Every inbound kind has exactly one handler
        self._handlers: Dict[MsgType, Handler] = {
            MsgType.REGISTER: self._handle_register,
            MsgType.CONTROL_COMMAND: self._handle_control_command,
            MsgType.STATUS_UPDATE: self._handle_status_update,
            MsgType.GET_SESSIONS: self._handle_get_sessions,
            MsgType.PING: self._handle_ping,
            MsgType.HEARTBEAT: self._handle_heartbeat,
        }

        # Server instances
        self.http_runner: Optional[web.AppRunner] = None
        self.ws_server: Optional[Server] = None
        self.started_at = 0.0

        # Shutdown event
        self.shutdown_event = asyncio.Event()

        # Setup HTTP app for the admin surface
        self.http_app = web.Application(middlewares=[self._origin_middleware])
        self._setup_http_routes()

    def _setup_http_routes(self) -> None:
        """Setup read-only HTTP routes."""
        self.http_app.router.add_get("/ping", self._handle_http_ping)
        self.http_app.router.add_get("/status", self._handle_http_status)
        self.http_app.router.add_get("/api/sessions", self._handle_http_sessions)

    def is_allowed(self, host: str) -> bool:
        return is_allowed_address(host, self._networks)

    @property
    def bound_ws_port(self) -> int:
        if self.ws_server is None:
            return 0
        return self.ws_server.sockets[0].getsockname()[1]

    # ------------------------------------------------------------------
    # HTTP admin surface
    # ------------------------------------------------------------------

    @web.middleware
    async def _origin_middleware(self, request: web.Request, handler):
        if not self.is_allowed(request.remote or ""):
            logger.warning("Rejected HTTP request from %s", request.remote)
            raise web.HTTPForbidden()
        return await handler(request)

    async def _handle_http_ping(self, request: web.Request) -> web.Response:
        """Simple ping endpoint."""
        return web.Response(text="pong")

    async def _handle_http_status(self, request: web.Request) -> web.Response:
        """Return server status."""
        status = {
            "status": "running",
            "version": __version__,
            "protocol": "websocket",
            "clients": len(self.clients),
            "sessions": len(self.registry),
            "uptime": int(self.clock() - self.started_at) if self.started_at else 0,
            "ws_port": self.bound_ws_port,
        }
        return web.json_response(status)

    async def _handle_http_sessions(self, request: web.Request) -> web.Response:
        return web.json_response({"sessions": self.registry.listing()})

    # ------------------------------------------------------------------
    # WebSocket relay
    # ------------------------------------------------------------------

    def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        """Refuse foreign or excess connections before the handshake."""
        remote = connection.remote_address[0] if connection.remote_address else ""
        if not self.is_allowed(remote):
            logger.warning("Rejected connection from %s", remote)
            return connection.respond(HTTPStatus.FORBIDDEN, "Forbidden\n")
        if self.config.max_clients and len(self.clients) >= self.config.max_clients:
            logger.warning("Rejected connection from %s: too many clients", remote)
            return connection.respond(HTTPStatus.SERVICE_UNAVAILABLE, "Too many clients\n")
        return None

    async def _websocket_handler(self, websocket: ServerConnection) -> None:
        """Handle a WebSocket connection."""
        remote = websocket.remote_address[0] if websocket.remote_address else ""
        connection = ClientConnection(websocket, remote, clock=self.clock, tasks=self.close_tasks)
        self.clients.add(connection)

        logger.info("Client connected: %s", remote)

        try:
            # Messages from one connection are handled strictly in order
            async for message in websocket:
                await self.handle_message(connection, message)
        except ConnectionClosed as e:
            logger.debug("%s: %s", TransportFailure.default_message, e)
        finally:
            connection.closed = True
            self.clients.discard(connection)
            await self._connection_lost(connection)
            logger.info("Client disconnected: %s", remote)

    async def _connection_lost(self, connection: ClientConnection) -> None:
        key = self.registry.remove_by_connection(connection)
        if key is not None:
            await self.router.notify_peers(key.session_id, key.role, MsgType.DEVICE_DISCONNECTED)

    async def handle_message(self, connection: ClientConnection, raw) -> None:
        """Decode and dispatch one frame; errors stay on this connection."""
        try:
            if not connection.allow(self.config.rate_limit, self.config.rate_window):
                raise RateLimited()
            # Only frames within the rate limit count as activity
            connection.touch()
            self.registry.touch(connection)
            data = decode_message(raw)
            handler = self._handlers[message_type(data)]
            await handler(connection, data)
        except RemoteError as e:
            logger.info("Rejected message from %s: %s", connection.remote_address, e.message)
            await connection.send_json(e.to_payload())
        except Exception as e:
            logger.exception("Error handling message from %s: %s", connection.remote_address, e)
            await connection.send_json(RemoteError().to_payload())

    async def _handle_register(self, connection: ClientConnection, data: dict) -> None:
        entry = self.registry.register(data.get("sessionId"), data.get("deviceType"), connection)
        key = entry.key
        old = entry.moved_from
        # A role swap within one session leaves no peer behind to tell
        if old is not None and old.peer != key:
            await self.router.notify_peers(old.session_id, old.role, MsgType.DEVICE_DISCONNECTED)
        await connection.send_json(
            make_message(MsgType.REGISTERED, sessionId=key.session_id, deviceType=key.role.value)
        )
        await self.router.notify_peers(key.session_id, key.role, MsgType.DEVICE_CONNECTED)
        if key.role is Role.MOBILE:
            await self.router.replay_status(key.session_id)

    async def _handle_control_command(self, connection: ClientConnection, data: dict) -> None:
        session_id = data.get("sessionId")
        command = data.get("command")
        if not isinstance(session_id, str) or command is None:
            raise MalformedMessage("sessionId and command are required")
        await self.router.forward(session_id, command)

    async def _handle_status_update(self, connection: ClientConnection, data: dict) -> None:
        session_id = data.get("sessionId")
        if not isinstance(session_id, str):
            raise MalformedMessage("sessionId is required")
        await self.router.update_status(session_id, StatusSnapshot.from_message(data))

    async def _handle_get_sessions(self, connection: ClientConnection, data: dict) -> None:
        await connection.send_json(make_message(MsgType.SESSION_LIST, sessions=self.registry.listing()))

    async def _handle_ping(self, connection: ClientConnection, data: dict) -> None:
        await connection.send_json(make_message(MsgType.PONG, timestamp=now_ms()))

    async def _handle_heartbeat(self, connection: ClientConnection, data: dict) -> None:
        # Receipt alone refreshes activity
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start both HTTP and WebSocket servers."""
        # Start HTTP server for the admin surface
        self.http_runner = web.AppRunner(self.http_app)
        await self.http_runner.setup()
        http_site = web.TCPSite(self.http_runner, self.config.host, self.config.port)
        await http_site.start()

        # Start WebSocket server on port + 1
        self.ws_server = await ws_serve(
            self._websocket_handler,
            self.config.host,
            self.config.ws_port,
            process_request=self._process_request,
            max_size=1024 * 1024,  # 1MB max message
            ping_interval=None,  # liveness is probed by the monitor
        )
        self.monitor.start()
        self.started_at = self.clock()

        # Show user-friendly URL
        display_host = self.config.host
        if display_host == "0.0.0.0":
            display_host = get_local_ip()

        print(f"\n🛋️  Couch Remote started!")
        print(f"   Admin:     http://{display_host}:{self.config.port}/api/sessions")
        print(f"   WebSocket: ws://{display_host}:{self.bound_ws_port}")
        print(f"\n   Point the pc and mobile endpoints at the WebSocket URL.\n")

    async def stop(self) -> None:
        """Stop the servers."""
        await self.monitor.stop()

        # Close all WebSocket connections
        for client in list(self.clients):
            client.close(1001, "server shutdown")
        if self.close_tasks:
            await asyncio.gather(*self.close_tasks)

        # Stop WebSocket server
        if self.ws_server:
            self.ws_server.close()
            await self.ws_server.wait_closed()
            self.ws_server = None

        # Stop HTTP server
        if self.http_runner:
            await self.http_runner.cleanup()
            self.http_runner = None

        print("\n🛋️  Couch Remote stopped.\n")

    async def run_forever(self) -> None:
        """Run the server until interrupted."""
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, self.shutdown_event.set)

        await self.start()
        try:
            await self.shutdown_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()


def run_server(config: Optional[Config] = None) -> None:
    """Run the server (blocking)."""
    server = CouchRemoteServer(config)

    try:
        asyncio.run(server.run_forever())
    except KeyboardInterrupt:
        print("\nShutting down...")
