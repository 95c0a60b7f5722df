from __future__ import annotations

import pytest

from couch_remote.errors import InvalidRegistration, MalformedMessage, UnknownMessageType
from couch_remote.protocol import (
    MsgType,
    Role,
    SessionKey,
    StatusSnapshot,
    decode_message,
    message_type,
)


def test_decode_rejects_non_json_and_missing_type():
    with pytest.raises(MalformedMessage):
        decode_message("not json")
    with pytest.raises(MalformedMessage):
        decode_message('["register"]')
    with pytest.raises(MalformedMessage):
        decode_message('{"sessionId": "S1"}')
    with pytest.raises(MalformedMessage):
        decode_message(b"\xff\xfe")


def test_decode_accepts_bytes_frame():
    assert decode_message(b'{"type": "ping"}') == {"type": "ping"}


def test_message_type_only_resolves_inbound_kinds():
    assert message_type({"type": "control_command"}) is MsgType.CONTROL_COMMAND
    with pytest.raises(UnknownMessageType):
        message_type({"type": "remote_command"})
    with pytest.raises(UnknownMessageType):
        message_type({"type": "launch_missiles"})


def test_session_key_validation():
    key = SessionKey.create("S1", "pc")
    assert key == SessionKey("S1", Role.PC)
    assert key.peer == SessionKey("S1", Role.MOBILE)

    for session_id, role in [("", "pc"), (None, "pc"), ("S1", None), ("S1", "tablet"), (42, "pc")]:
        with pytest.raises(InvalidRegistration):
            SessionKey.create(session_id, role)

    with pytest.raises(InvalidRegistration):
        SessionKey.create("x" * 500, "mobile")


def test_status_snapshot_parses_aliases_and_clamps_volume():
    snapshot = StatusSnapshot.from_message({
        "type": "status_update",
        "sessionId": "S1",
        "isPlaying": True,
        "title": "Song",
        "artist": "Band",
        "progressSeconds": 12.5,
        "durationSeconds": "200",
        "volumePercent": 140,
    })
    assert snapshot.is_playing is True
    assert snapshot.progress == 12.5
    assert snapshot.duration == 200.0
    assert snapshot.volume == 100

    body = snapshot.to_dict()
    assert body["title"] == "Song"
    assert body["volume"] == 100
    assert "timestamp" in body


def test_status_snapshot_rejects_garbage_numbers():
    with pytest.raises(MalformedMessage):
        StatusSnapshot.from_message({"progress": "soon"})


@pytest.mark.parametrize("raw", [
    '{"type": "status_update", "volume": NaN}',
    '{"type": "status_update", "duration": Infinity}',
    '{"type": "status_update", "progress": -Infinity}',
    '{"type": "status_update", "duration": 1e999}',
])
def test_status_snapshot_rejects_non_finite_numbers(raw):
    with pytest.raises(MalformedMessage):
        StatusSnapshot.from_message(decode_message(raw))


def test_status_snapshot_rejects_non_finite_strings():
    with pytest.raises(MalformedMessage):
        StatusSnapshot.from_message({"volumePercent": "nan"})
