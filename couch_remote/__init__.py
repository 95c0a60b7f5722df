"""
Couch Remote - Media Remote Relay for the Local Network

Pairs a "pc" player endpoint with a "mobile" remote under a shared session
id and relays control commands and player status between them. Endpoints
on the same network can also find each other without a server and open a
direct peer channel.

Features:
- WebSocket relay with one connection per (session, device)
- Heartbeats, liveness probing and stale-session cleanup
- Private-network origin filtering
- Broadcast discovery with offer/answer/ICE signaling

Usage:
    couch-remote start     # Start the relay server
    couch-remote stop      # Stop the relay server
    couch-remote status    # Check server status
    couch-remote discover  # Announce or scan for a direct peer
"""

__version__ = "1.0.0"
__author__ = "Couch Remote"
