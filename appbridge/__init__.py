"""Session and command layer for driving apps through the MCP bridge plugin."""

from appbridge.client import EndpointClient
from appbridge.config import BridgeSettings, resolve_first
from appbridge.discovery import Discovery, DiscoveryResult
from appbridge.errors import (
    AmbiguousTargetError,
    BridgeError,
    CommandTimeoutError,
    ConfigError,
    EndpointConnectionError,
    HandshakeError,
    NoActiveSessionError,
    ProtocolError,
    RemoteCommandError,
)
from appbridge.registry import Session, SessionRegistry, StartOutcome, StartResult
from appbridge.retry import RetryPolicy, execute_with_retry

__version__ = "0.1.0"

__all__ = [
    "AmbiguousTargetError",
    "BridgeError",
    "BridgeSettings",
    "CommandTimeoutError",
    "ConfigError",
    "Discovery",
    "DiscoveryResult",
    "EndpointClient",
    "EndpointConnectionError",
    "HandshakeError",
    "NoActiveSessionError",
    "ProtocolError",
    "RemoteCommandError",
    "RetryPolicy",
    "Session",
    "SessionRegistry",
    "StartOutcome",
    "StartResult",
    "execute_with_retry",
    "resolve_first",
]
