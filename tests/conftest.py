from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from couch_remote.connection import ClientConnection


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    def __init__(self) -> None:
        self.aborted = False

    def abort(self) -> None:
        self.aborted = True


class FakeWebSocket:
    """Stands in for a websockets ServerConnection."""

    def __init__(self) -> None:
        self.state = State.OPEN
        self.sent: List[str] = []
        self.close_calls: List[tuple] = []
        self.pings: List[asyncio.Future] = []
        self.transport = FakeTransport()

    async def send(self, data: str) -> None:
        if self.state is not State.OPEN:
            raise ConnectionClosed(None, None)
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls.append((code, reason))
        self.state = State.CLOSED

    async def ping(self) -> asyncio.Future:
        waiter = asyncio.get_running_loop().create_future()
        self.pings.append(waiter)
        return waiter

    def messages(self) -> List[Dict[str, Any]]:
        return [json.loads(raw) for raw in self.sent]


class FakeLink:
    def __init__(self, is_open: bool = True) -> None:
        self.is_open = is_open
        self.sent: List[Dict[str, Any]] = []

    async def send_json(self, message: Dict[str, Any]) -> bool:
        if not self.is_open:
            return False
        self.sent.append(message)
        return True


class FakeConnector:
    """Peer connector that records signaling calls instead of doing WebRTC."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.on_open = None
        self.on_close = None
        self.on_candidate = None
        self.on_message = None
        self.is_open = False
        self.generation = 0
        self.offers: List[Dict[str, Any]] = []
        self.answers: List[Dict[str, Any]] = []
        self.candidates: List[Dict[str, Any]] = []
        self.resets = 0
        self.closed = False
        self.sent: List[Dict[str, Any]] = []

    async def create_offer(self) -> Dict[str, Any]:
        self.generation += 1
        return {"type": "offer", "sdp": f"{self.name}-offer-{self.generation}"}

    async def accept_offer(self, offer: Dict[str, Any]) -> Dict[str, Any]:
        self.offers.append(offer)
        return {"type": "answer", "sdp": f"{self.name}-answer-{len(self.offers)}"}

    async def accept_answer(self, answer: Dict[str, Any]) -> None:
        self.answers.append(answer)

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        self.candidates.append(candidate)

    async def send_json(self, message: Dict[str, Any]) -> bool:
        if not self.is_open:
            return False
        self.sent.append(message)
        return True

    async def reset(self) -> None:
        self.resets += 1
        self.is_open = False

    async def close(self) -> None:
        self.closed = True
        self.is_open = False

    def open(self) -> None:
        self.is_open = True
        self.on_open()

    def lose(self) -> None:
        self.is_open = False
        self.on_close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_connection(clock):
    def factory(address: str = "192.168.1.10", clock_override: Optional[FakeClock] = None) -> ClientConnection:
        return ClientConnection(FakeWebSocket(), address, clock=clock_override or clock)

    return factory
