from __future__ import annotations

import asyncio

import pytest

from conftest import FakeWebSocket
from couch_remote.connection import ClientConnection
from couch_remote.errors import InvalidRegistration, RegistryFull
from couch_remote.protocol import Role, SessionKey, StatusSnapshot
from couch_remote.registry import SessionRegistry


def test_register_twice_keeps_one_entry_and_closes_prior(clock, make_connection):
    async def scenario():
        registry = SessionRegistry(clock=clock)
        first = make_connection()
        second = make_connection()

        registry.register("S1", "pc", first)
        registry.register("S1", "pc", second)

        assert len(registry) == 1
        assert registry.lookup("S1", Role.PC).connection is second
        assert first.closed
        await asyncio.sleep(0)
        assert first.websocket.close_calls

        # The replaced connection closing later must not evict the new one
        assert registry.remove_by_connection(first) is None
        assert registry.lookup("S1", Role.PC).connection is second

    asyncio.run(scenario())


def test_replaced_connection_closes_through_owner_task_set(clock):
    async def scenario():
        tasks = set()
        registry = SessionRegistry(clock=clock)
        first = ClientConnection(FakeWebSocket(), clock=clock, tasks=tasks)
        second = ClientConnection(FakeWebSocket(), clock=clock, tasks=tasks)

        registry.register("S1", "pc", first)
        registry.register("S1", "pc", second)

        assert len(tasks) == 1
        await asyncio.gather(*tasks)
        assert first.websocket.close_calls == [(1000, "replaced")]
        assert not tasks
        assert second.tasks is tasks

    asyncio.run(scenario())


@pytest.mark.parametrize("session_id,role", [(None, "pc"), ("", "mobile"), ("S1", None), ("S1", "tv")])
def test_invalid_registration_leaves_no_state(clock, make_connection, session_id, role):
    registry = SessionRegistry(clock=clock)
    connection = make_connection()
    with pytest.raises(InvalidRegistration):
        registry.register(session_id, role, connection)
    assert len(registry) == 0
    assert registry.lookup_connection(connection) is None


def test_lookup_peer_and_remove_by_connection(clock, make_connection):
    registry = SessionRegistry(clock=clock)
    pc = make_connection()
    mobile = make_connection()
    registry.register("S1", "pc", pc)
    registry.register("S1", "mobile", mobile)

    assert registry.lookup_peer("S1", Role.MOBILE).connection is pc
    assert registry.lookup_peer("S1", Role.PC).connection is mobile
    assert registry.lookup_peer("S2", Role.PC) is None

    assert registry.remove_by_connection(pc) == SessionKey("S1", Role.PC)
    assert registry.remove_by_connection(pc) is None
    assert registry.lookup("S1", Role.PC) is None
    assert len(registry) == 1


def test_connection_moves_to_new_key(clock, make_connection):
    registry = SessionRegistry(clock=clock)
    connection = make_connection()
    first = registry.register("S1", "mobile", connection)
    moved = registry.register("S2", "mobile", connection)

    assert first.moved_from is None
    assert moved.moved_from == SessionKey("S1", Role.MOBILE)
    assert registry.lookup("S1", Role.MOBILE) is None
    assert registry.lookup("S2", Role.MOBILE).connection is connection
    assert not connection.closed
    assert len(registry) == 1

    # Same key again is not a move
    assert registry.register("S2", "mobile", connection).moved_from is None


def test_capacity_limit_rejects_new_keys_only(clock, make_connection):
    async def scenario():
        registry = SessionRegistry(max_sessions=2, clock=clock)
        registry.register("S1", "pc", make_connection())
        registry.register("S1", "mobile", make_connection())

        with pytest.raises(RegistryFull):
            registry.register("S2", "pc", make_connection())

        # Replacing an existing key is still allowed when full
        registry.register("S1", "pc", make_connection())
        assert len(registry) == 2

    asyncio.run(scenario())


def test_touch_and_listing(clock, make_connection):
    registry = SessionRegistry(clock=clock)
    connection = make_connection()
    entry = registry.register("S1", "pc", connection)
    entry.status = StatusSnapshot(title="Song", timestamp=1)

    clock.advance(42)
    registry.touch(connection)

    assert entry.last_activity == clock.now
    rows = registry.listing()
    assert rows == [{
        "sessionId": "S1",
        "deviceType": "pc",
        "connected": True,
        "lastActivity": int(clock.now * 1000),
        "status": entry.status.to_dict(),
    }]
