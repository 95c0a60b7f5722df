from __future__ import annotations

import asyncio

from websockets.protocol import State

from couch_remote.protocol import MsgType, Role, StatusSnapshot
from couch_remote.registry import SessionRegistry
from couch_remote.relay import RelayRouter


def _paired(clock, make_connection):
    registry = SessionRegistry(clock=clock)
    router = RelayRouter(registry)
    pc = make_connection()
    mobile = make_connection()
    registry.register("S1", "pc", pc)
    registry.register("S1", "mobile", mobile)
    return registry, router, pc, mobile


def test_forward_delivers_command_verbatim_to_pc(clock, make_connection):
    async def scenario():
        _, router, pc, mobile = _paired(clock, make_connection)
        command = {"type": "seek", "position": 42}

        assert await router.forward("S1", command) is True
        assert pc.websocket.messages() == [{"type": "remote_command", "command": command}]
        assert mobile.websocket.messages() == []

    asyncio.run(scenario())


def test_forward_without_open_pc_is_silent(clock, make_connection):
    async def scenario():
        registry, router, pc, mobile = _paired(clock, make_connection)

        assert await router.forward("unknown", {"type": "next"}) is False

        pc.websocket.state = State.CLOSED
        assert await router.forward("S1", {"type": "next"}) is False
        assert pc.websocket.sent == []
        assert mobile.websocket.sent == []

        registry.remove_by_connection(pc)
        assert await router.forward("S1", {"type": "next"}) is False

    asyncio.run(scenario())


def test_update_status_stores_snapshot_and_pushes_to_mobile(clock, make_connection):
    async def scenario():
        registry, router, pc, mobile = _paired(clock, make_connection)
        status = StatusSnapshot(is_playing=True, title="Song", artist="Band", volume=30)

        assert await router.update_status("S1", status) is True
        assert registry.lookup("S1", Role.PC).status is status

        (message,) = mobile.websocket.messages()
        assert message["type"] == "status_update"
        assert message["sessionId"] == "S1"
        assert message["title"] == "Song"
        assert message["isPlaying"] is True
        assert pc.websocket.sent == []

    asyncio.run(scenario())


def test_update_status_without_mobile_still_stores(clock, make_connection):
    async def scenario():
        registry = SessionRegistry(clock=clock)
        router = RelayRouter(registry)
        registry.register("S1", "pc", make_connection())
        status = StatusSnapshot(title="Alone")

        assert await router.update_status("S1", status) is False
        assert registry.lookup("S1", Role.PC).status is status

    asyncio.run(scenario())


def test_notify_peers_targets_other_role(clock, make_connection):
    async def scenario():
        _, router, pc, mobile = _paired(clock, make_connection)

        assert await router.notify_peers("S1", Role.PC, MsgType.DEVICE_DISCONNECTED) is True
        assert mobile.websocket.messages() == [{"type": "device_disconnected", "deviceType": "pc"}]
        assert pc.websocket.sent == []

        assert await router.notify_peers("S2", Role.PC, MsgType.DEVICE_CONNECTED) is False

    asyncio.run(scenario())


def test_replay_status_to_new_mobile(clock, make_connection):
    async def scenario():
        registry, router, pc, mobile = _paired(clock, make_connection)
        assert await router.replay_status("S1") is False

        registry.lookup("S1", Role.PC).status = StatusSnapshot(title="Now playing")
        assert await router.replay_status("S1") is True
        assert mobile.websocket.messages()[-1]["title"] == "Now playing"

    asyncio.run(scenario())
