"""
Direct peer channel built with aiortc.

The host creates the data channel and the offer; the client answers. aiortc
gathers ICE candidates before ``setLocalDescription`` returns, so local
candidates travel inside the SDP and ``on_candidate`` is only fired by
connectors that trickle. Remote trickled candidates (browser style
``candidate:...`` strings) are accepted and buffered until a remote
description exists.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

logger = logging.getLogger(__name__)

DEFAULT_STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


class AiortcConnector:
    """One RTCPeerConnection with a single JSON data channel."""

    def __init__(self, stun_servers: Sequence[str] = DEFAULT_STUN_SERVERS, label: str = "couch-remote"):
        self.stun_servers = list(stun_servers)
        self.label = label

        self.on_open: Optional[Callable[[], None]] = None
        self.on_close: Optional[Callable[[], None]] = None
        self.on_candidate: Optional[Callable[[Dict[str, Any]], None]] = None
        self.on_message: Optional[Callable[[Dict[str, Any]], None]] = None

        self._pc: Optional[RTCPeerConnection] = None
        self._channel = None
        self._opened = False
        self._pending: List[Dict[str, Any]] = []

    @property
    def is_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open"

    def _new_peer_connection(self) -> RTCPeerConnection:
        ice_servers = [RTCIceServer(urls=url) for url in self.stun_servers]
        pc = RTCPeerConnection(RTCConfiguration(iceServers=ice_servers))

        @pc.on("datachannel")
        def on_datachannel(channel):
            if pc is self._pc:
                self._bind_channel(channel)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.debug("Peer connection state: %s", pc.connectionState)
            if pc is self._pc and pc.connectionState in ("failed", "closed"):
                self._fire_close()

        self._pc = pc
        self._opened = False
        return pc

    def _bind_channel(self, channel) -> None:
        self._channel = channel

        @channel.on("open")
        def on_open():
            if channel is self._channel:
                self._fire_open()

        @channel.on("close")
        def on_close():
            if channel is self._channel:
                self._fire_close()

        @channel.on("message")
        def on_message(raw):
            if not isinstance(raw, str) or self.on_message is None:
                return
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                return
            if isinstance(data, dict):
                self.on_message(data)

        if channel.readyState == "open":
            self._fire_open()

    def _fire_open(self) -> None:
        if self._opened:
            return
        self._opened = True
        logger.info("Direct channel open")
        if self.on_open is not None:
            self.on_open()

    def _fire_close(self) -> None:
        if not self._opened:
            return
        self._opened = False
        logger.info("Direct channel closed")
        if self.on_close is not None:
            self.on_close()

    @staticmethod
    def _description(pc: RTCPeerConnection) -> Dict[str, Any]:
        return {"type": pc.localDescription.type, "sdp": pc.localDescription.sdp}

    async def create_offer(self) -> Dict[str, Any]:
        await self.reset()
        pc = self._new_peer_connection()
        self._bind_channel(pc.createDataChannel(self.label))
        await pc.setLocalDescription(await pc.createOffer())
        return self._description(pc)

    async def accept_offer(self, offer: Dict[str, Any]) -> Dict[str, Any]:
        # Candidates may arrive before the offer they belong to
        pending = self._pending
        await self.reset()
        self._pending = pending
        pc = self._new_peer_connection()
        await pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
        await self._flush_candidates()
        await pc.setLocalDescription(await pc.createAnswer())
        return self._description(pc)

    async def accept_answer(self, answer: Dict[str, Any]) -> None:
        if self._pc is None:
            return
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))
        await self._flush_candidates()

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        if not candidate.get("candidate"):
            return
        if self._pc is None or self._pc.remoteDescription is None:
            self._pending.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: Dict[str, Any]) -> None:
        sdp = candidate["candidate"]
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        ice = candidate_from_sdp(sdp)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice)

    async def _flush_candidates(self) -> None:
        pending, self._pending = self._pending, []
        for candidate in pending:
            try:
                await self._apply_candidate(candidate)
            except ValueError as e:
                logger.debug("Ignoring bad ICE candidate: %s", e)

    async def send_json(self, message: Dict[str, Any]) -> bool:
        if not self.is_open:
            return False
        self._channel.send(json.dumps(message))
        return True

    async def reset(self) -> None:
        """Drop the current peer connection without firing ``on_close``."""
        pc, self._pc = self._pc, None
        self._channel = None
        self._opened = False
        self._pending = []
        if pc is not None:
            await pc.close()

    async def close(self) -> None:
        await self.reset()
