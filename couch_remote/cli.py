#!/usr/bin/env python3
"""
Couch Remote CLI - Command line interface for the relay server and discovery.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

# PID file location
PID_FILE = Path("/tmp/couch-remote.pid")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for CLI commands."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


def get_pid() -> int | None:
    """Get PID from file if exists."""
    if PID_FILE.exists():
        try:
            pid = int(PID_FILE.read_text().strip())
            # Check if process is running
            os.kill(pid, 0)
            return pid
        except (ValueError, OSError):
            PID_FILE.unlink(missing_ok=True)
    return None


def write_pid() -> None:
    """Write current PID to file."""
    PID_FILE.write_text(str(os.getpid()))


def remove_pid() -> None:
    """Remove PID file."""
    PID_FILE.unlink(missing_ok=True)


def cmd_start(args) -> int:
    """Start the server."""
    # Check if already running
    existing_pid = get_pid()
    if existing_pid:
        print(f"❌ Couch Remote is already running (PID: {existing_pid})")
        print(f"   Run 'couch-remote stop' first")
        return 1

    # Import here to avoid loading when not needed
    from .config import get_local_ip, reload_config
    from .server import run_server

    config = reload_config()

    # Override with CLI args if provided
    if args.port:
        config._config["server"]["port"] = args.port
    if args.host:
        config._config["server"]["host"] = get_local_ip() if args.host == "auto" else args.host

    setup_logging("DEBUG" if args.verbose else config.log_level)

    # Write PID
    write_pid()

    try:
        run_server(config)
    except KeyboardInterrupt:
        pass
    finally:
        remove_pid()

    return 0


def cmd_stop(args) -> int:
    """Stop the server."""
    pid = get_pid()

    if not pid:
        print("ℹ️  Couch Remote is not running")
        return 0

    try:
        os.kill(pid, signal.SIGTERM)
        print(f"✅ Stopped Couch Remote (PID: {pid})")
        remove_pid()
        return 0
    except OSError as e:
        print(f"❌ Failed to stop: {e}")
        remove_pid()
        return 1


def cmd_status(args) -> int:
    """Check server status."""
    pid = get_pid()

    if pid:
        print(f"✅ Couch Remote is running (PID: {pid})")

        from .config import get_config
        config = get_config()
        print(f"   Admin:     http://{config.host}:{config.port}/api/sessions")
        print(f"   WebSocket: ws://{config.host}:{config.ws_port}")
        return 0
    else:
        print("❌ Couch Remote is not running")
        return 1


def cmd_ip(args) -> int:
    """Show local IP address."""
    from .config import get_config, get_local_ip

    ip = get_local_ip()
    config = get_config()
    print(f"📍 Local IP: {ip}")
    print(f"   WebSocket: ws://{ip}:{config.ws_port}")
    return 0


def cmd_config(args) -> int:
    """Show current configuration."""
    from .config import get_config, get_config_paths

    print("📝 Configuration:")
    print()

    # Show config file locations
    print("   Config file search paths:")
    for path in get_config_paths():
        exists = "✓" if path.exists() else " "
        print(f"   [{exists}] {path}")
    print()

    # Show current config
    config = get_config()
    print("   Current settings:")
    print(f"   - Host: {config.host}")
    print(f"   - Port: {config.port} (WebSocket {config.ws_port})")
    print(f"   - Max clients: {config.max_clients}")
    print(f"   - Max sessions: {config.max_sessions}")
    print(f"   - Rate limit: {config.rate_limit} msgs / {config.rate_window}s")
    print(f"   - Heartbeat: every {config.heartbeat_interval}s")
    print(f"   - Stale timeout: {config.stale_timeout}s")
    print(f"   - Discovery port: {config.discovery_port}")

    return 0


async def _discover(config, role: str, device_name: str, network_id: str,
                    relay_url: str | None = None, session_id: str = "couch-remote") -> None:
    """Run the discovery signaler until interrupted."""
    from .discovery import DiscoveryRole, DiscoverySignaler, UdpBroadcastMedium
    from .endpoint import EndpointRouter, RelayClient
    from .peer import AiortcConnector
    from .protocol import Role

    medium = await UdpBroadcastMedium(port=config.discovery_port).open()
    connector = AiortcConnector(stun_servers=config.stun_servers)

    def on_state_change(state) -> None:
        print(f"   State: {state.value}")

    def on_peer_message(message: dict) -> None:
        print(f"   Peer: {message}")

    signaler = DiscoverySignaler(
        DiscoveryRole(role),
        medium,
        connector,
        network_id=network_id,
        device_name=device_name,
        interval=config.discovery_interval,
        negotiation_timeout=config.negotiation_timeout,
        on_state_change=on_state_change,
        on_peer_message=on_peer_message,
    )

    # The announcing host is the player, the scanning client the remote
    endpoint_role = Role.PC if role == "host" else Role.MOBILE
    relay = None
    if relay_url:
        relay = await RelayClient(relay_url, session_id, endpoint_role, on_message=on_peer_message).connect()
    router = EndpointRouter(session_id, endpoint_role, relay, link=lambda: signaler.link)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)

    sending = set()

    def on_stdin() -> None:
        line = sys.stdin.readline()
        if not line:
            loop.remove_reader(sys.stdin)
            return
        line = line.strip()
        if line:
            task = asyncio.ensure_future(router.send_command({"type": line}))
            sending.add(task)
            task.add_done_callback(sending.discard)

    if endpoint_role is Role.MOBILE:
        print("   Type a command (play_pause, next, previous) and press Enter")
        loop.add_reader(sys.stdin, on_stdin)

    await signaler.start()
    try:
        await stop_event.wait()
    finally:
        if endpoint_role is Role.MOBILE:
            loop.remove_reader(sys.stdin)
        await signaler.stop()
        await medium.close()
        if relay is not None:
            await relay.close()


def cmd_discover(args) -> int:
    """Announce (host) or scan (client) for a direct peer."""
    from .config import reload_config
    from .discovery import default_fingerprint, derive_network_id

    config = reload_config()
    setup_logging("DEBUG" if args.verbose else config.log_level)

    user_agent, lang = default_fingerprint()
    network_id = args.network_id or config.network_id or derive_network_id(
        user_agent, lang, config.discovery_namespace
    )
    device_name = args.name or config.device_name

    print(f"🔍 Discovery as {args.role} on network {network_id}")

    try:
        asyncio.run(_discover(config, args.role, device_name, network_id, args.relay, args.session))
    except KeyboardInterrupt:
        print("\nStopping discovery...")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="couch-remote",
        description="Media remote relay for the local network",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  couch-remote start                    # Start with default settings
  couch-remote start --port 9090        # HTTP on 9090, WebSocket on 9091
  couch-remote stop                     # Stop the server
  couch-remote status                   # Check if running
  couch-remote discover --role host     # Announce this machine to remotes
  couch-remote discover --role client   # Scan for an announcing host
  couch-remote discover --role client --relay ws://192.168.1.5:8081
                                        # Fall back to the relay until a direct channel opens
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Start command
    start_parser = subparsers.add_parser("start", help="Start the server")
    start_parser.add_argument("--port", "-p", type=int, help="HTTP port, WebSocket uses port+1 (default: 8080)")
    start_parser.add_argument("--host", type=str, help="Bind address (default: 0.0.0.0, 'auto' for LAN IP)")
    start_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    start_parser.set_defaults(func=cmd_start)

    # Stop command
    stop_parser = subparsers.add_parser("stop", help="Stop the server")
    stop_parser.set_defaults(func=cmd_stop)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check server status")
    status_parser.set_defaults(func=cmd_status)

    # IP command
    ip_parser = subparsers.add_parser("ip", help="Show local IP address")
    ip_parser.set_defaults(func=cmd_ip)

    # Config command
    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.set_defaults(func=cmd_config)

    # Discover command
    discover_parser = subparsers.add_parser("discover", help="Find a peer without a server")
    discover_parser.add_argument("--role", "-r", choices=["host", "client"], default="host", help="host announces, client scans")
    discover_parser.add_argument("--name", "-n", type=str, help="Device name shown to peers")
    discover_parser.add_argument("--network-id", type=str, help="Override the derived discovery namespace")
    discover_parser.add_argument("--relay", type=str, help="Relay WebSocket URL used while no direct channel is open")
    discover_parser.add_argument("--session", "-s", type=str, default="couch-remote", help="Session id on the relay (default: couch-remote)")
    discover_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    discover_parser.set_defaults(func=cmd_discover)

    # Parse args
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
