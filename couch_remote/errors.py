"""
Error taxonomy for Couch Remote.

Every failure is local to one connection or session. Errors that reach a
client are turned into an ``error`` message via ``to_payload()``.
"""

from typing import Any, Dict


class RemoteError(Exception):
    """Base class for all relay and discovery errors."""

    default_message = "Request failed"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        """Map the error into an ``error`` message for the client."""
        return {"type": "error", "message": self.message}


class InvalidRegistration(RemoteError):
    """Missing or malformed sessionId / deviceType on register."""

    default_message = "sessionId and deviceType are required"


class RegistryFull(InvalidRegistration):
    """A new session key would exceed the configured capacity."""

    default_message = "Too many active sessions"


class PeerUnavailable(RemoteError):
    """Target role is not registered or its connection is not open."""

    default_message = "Peer is not connected"


class MalformedMessage(RemoteError):
    """Frame is not a JSON object or lacks a ``type`` field."""

    default_message = "Invalid message format"


class UnknownMessageType(MalformedMessage):
    default_message = "Unknown message type"


class RateLimited(RemoteError):
    default_message = "Rate limit exceeded"


class TransportFailure(RemoteError):
    """Socket error or close observed on a connection."""

    default_message = "Connection lost"


class NamespaceMismatch(RemoteError):
    """Discovery message tagged with a foreign networkId."""

    default_message = "Foreign discovery namespace"


__all__ = [
    "RemoteError",
    "InvalidRegistration",
    "RegistryFull",
    "PeerUnavailable",
    "MalformedMessage",
    "UnknownMessageType",
    "RateLimited",
    "TransportFailure",
    "NamespaceMismatch",
]
