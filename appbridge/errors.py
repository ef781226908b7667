"""Error taxonomy for the bridge session layer."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error raised by appbridge."""


class EndpointConnectionError(BridgeError, ConnectionError):
    """Transport unreachable, refused, or lost. Never retried here."""


class HandshakeError(EndpointConnectionError):
    """The endpoint accepted the transport but did not complete the handshake."""


class CommandTimeoutError(BridgeError, TimeoutError):
    """No response arrived before the request deadline."""


class RemoteCommandError(BridgeError):
    """The application answered a command with an error frame."""

    def __init__(self, command: str, remote_message: str) -> None:
        self.command = command
        self.remote_message = remote_message
        super().__init__(f"{command} failed: {remote_message}")


class NoActiveSessionError(BridgeError):
    """No session exists to route a command to."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or 'No active session. Call driver_session with action "start" first'
        )


class AmbiguousTargetError(BridgeError):
    """The target identifier matched none or several of the live sessions."""


class ProtocolError(BridgeError, ValueError):
    """A frame could not be decoded into a response or an event."""


class ConfigError(BridgeError, ValueError):
    """An environment override could not be parsed."""
