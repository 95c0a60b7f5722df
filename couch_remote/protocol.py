"""
Relay wire protocol: message kinds, roles, session keys and status snapshots.

Every frame is a JSON object with a mandatory ``type`` field.
"""

import json
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import InvalidRegistration, MalformedMessage, UnknownMessageType


MAX_SESSION_ID_LENGTH = 128


class MsgType(str, Enum):
    """All relay message kinds."""

    # client -> server
    REGISTER = "register"
    CONTROL_COMMAND = "control_command"
    STATUS_UPDATE = "status_update"
    GET_SESSIONS = "get_sessions"
    PING = "ping"
    HEARTBEAT = "heartbeat"

    # server -> client
    REGISTERED = "registered"
    REMOTE_COMMAND = "remote_command"
    DEVICE_CONNECTED = "device_connected"
    DEVICE_DISCONNECTED = "device_disconnected"
    SESSION_LIST = "session_list"
    PONG = "pong"
    ERROR = "error"


# Kinds a client may send; the server dispatch table must cover exactly these.
INBOUND_TYPES = frozenset({
    MsgType.REGISTER,
    MsgType.CONTROL_COMMAND,
    MsgType.STATUS_UPDATE,
    MsgType.GET_SESSIONS,
    MsgType.PING,
    MsgType.HEARTBEAT,
})


class Role(str, Enum):
    PC = "pc"
    MOBILE = "mobile"

    @property
    def peer(self) -> "Role":
        return Role.MOBILE if self is Role.PC else Role.PC


def now_ms() -> int:
    """Wall clock in milliseconds, as carried in ``timestamp`` fields."""
    return int(time.time() * 1000)


def parse_role(value: Any) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise InvalidRegistration(f"Unknown deviceType: {value!r}") from None


def validate_session_id(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRegistration("sessionId and deviceType are required")
    if len(value) > MAX_SESSION_ID_LENGTH:
        raise InvalidRegistration("sessionId is too long")
    return value


@dataclass(frozen=True)
class SessionKey:
    """Composite (sessionId, role) key; unique per live connection."""

    session_id: str
    role: Role

    @classmethod
    def create(cls, session_id: Any, role: Any) -> "SessionKey":
        """Build a key from raw wire values, raising InvalidRegistration."""
        if role is None or role == "":
            raise InvalidRegistration()
        return cls(validate_session_id(session_id), parse_role(role))

    @property
    def peer(self) -> "SessionKey":
        return SessionKey(self.session_id, self.role.peer)

    def __str__(self) -> str:
        return f"{self.session_id}/{self.role.value}"


def _number(data: Dict[str, Any], *names: str, default: float = 0.0) -> float:
    for name in names:
        if name in data and data[name] is not None:
            try:
                value = float(data[name])
            except (TypeError, ValueError):
                raise MalformedMessage(f"Invalid value for {name}") from None
            # NaN and infinities have no JSON encoding
            if not math.isfinite(value):
                raise MalformedMessage(f"Invalid value for {name}")
            return value
    return default


@dataclass
class StatusSnapshot:
    """Latest player state reported by the "pc" endpoint."""

    is_playing: bool = False
    title: str = ""
    artist: str = ""
    progress: float = 0.0
    duration: float = 0.0
    volume: int = 50
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_message(cls, data: Dict[str, Any]) -> "StatusSnapshot":
        """Parse a ``status_update`` body, accepting long-form aliases."""
        volume = _number(data, "volume", "volumePercent", default=50)
        return cls(
            is_playing=bool(data.get("isPlaying", False)),
            title=str(data.get("title") or ""),
            artist=str(data.get("artist") or ""),
            progress=max(0.0, _number(data, "progress", "progressSeconds")),
            duration=max(0.0, _number(data, "duration", "durationSeconds")),
            volume=max(0, min(100, int(round(volume)))),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isPlaying": self.is_playing,
            "title": self.title,
            "artist": self.artist,
            "progress": self.progress,
            "duration": self.duration,
            "volume": self.volume,
            "timestamp": self.timestamp,
        }


def decode_message(raw: Union[str, bytes]) -> Dict[str, Any]:
    """
    Decode one frame into a message dict.

    Raises:
        MalformedMessage: not JSON, not an object, or no ``type`` field.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedMessage() from None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise MalformedMessage() from None
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise MalformedMessage()
    return data


def message_type(data: Dict[str, Any]) -> MsgType:
    """Resolve the kind of an inbound message."""
    try:
        kind = MsgType(data["type"])
    except ValueError:
        raise UnknownMessageType() from None
    if kind not in INBOUND_TYPES:
        raise UnknownMessageType()
    return kind


def encode_message(message: Dict[str, Any]) -> str:
    return json.dumps(message, ensure_ascii=False, separators=(",", ":"))


def make_message(kind: MsgType, **fields: Any) -> Dict[str, Any]:
    message: Dict[str, Any] = {"type": kind.value}
    message.update(fields)
    return message


def error_message(text: str, session_id: Optional[str] = None) -> Dict[str, Any]:
    message = make_message(MsgType.ERROR, message=text)
    if session_id:
        message["sessionId"] = session_id
    return message
