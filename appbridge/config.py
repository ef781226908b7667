"""Connection settings resolved from call parameters, environment, and defaults."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from appbridge.errors import ConfigError
from appbridge.protocol import DEFAULT_HOST, DEFAULT_PORT, PORT_RANGE_SIZE

T = TypeVar("T")

ENV_HOST = "MCP_BRIDGE_HOST"
ENV_PORT = "MCP_BRIDGE_PORT"
ENV_REMOTE_HOSTS = ("MCP_BRIDGE_REMOTE_HOST", "TAURI_DEV_HOST")
ENV_CONNECT_TIMEOUT = "MCP_BRIDGE_CONNECT_TIMEOUT"
ENV_PROBE_TIMEOUT = "MCP_BRIDGE_PROBE_TIMEOUT"
ENV_LOG_LEVEL = "MCP_BRIDGE_LOG_LEVEL"

DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_PROBE_TIMEOUT = 1.0
DEFAULT_SCAN_CONCURRENCY = 16


def resolve_first(*values: T | None) -> T | None:
    """Return the first value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


def _env_value(env: Mapping[str, str], name: str) -> str | None:
    value = env.get(name, "").strip()
    return value or None


def _parse(env: Mapping[str, str], name: str, convert: Callable[[str], Any]) -> Any:
    raw = _env_value(env, name)
    if raw is None:
        return None
    try:
        return convert(raw)
    except ValueError as exc:
        raise ConfigError(f"{name}={raw!r} is not a valid value") from exc


@dataclass(frozen=True)
class BridgeSettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    remote_host: str | None = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    scan_size: int = PORT_RANGE_SIZE
    scan_concurrency: int = DEFAULT_SCAN_CONCURRENCY
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, **overrides: Any) -> BridgeSettings:
        """Build settings; explicit overrides win over the environment.

        Overrides set to None are ignored, so callers can pass optional
        parameters straight through.
        """
        env = os.environ if env is None else env
        remote_host = resolve_first(*(_env_value(env, name) for name in ENV_REMOTE_HOSTS))
        return cls(
            host=resolve_first(overrides.get("host"), _env_value(env, ENV_HOST), DEFAULT_HOST),
            port=resolve_first(overrides.get("port"), _parse(env, ENV_PORT, int), DEFAULT_PORT),
            remote_host=resolve_first(overrides.get("remote_host"), remote_host),
            connect_timeout=resolve_first(
                overrides.get("connect_timeout"),
                _parse(env, ENV_CONNECT_TIMEOUT, float),
                DEFAULT_CONNECT_TIMEOUT,
            ),
            probe_timeout=resolve_first(
                overrides.get("probe_timeout"),
                _parse(env, ENV_PROBE_TIMEOUT, float),
                DEFAULT_PROBE_TIMEOUT,
            ),
            scan_size=resolve_first(overrides.get("scan_size"), PORT_RANGE_SIZE),
            scan_concurrency=resolve_first(
                overrides.get("scan_concurrency"), DEFAULT_SCAN_CONCURRENCY
            ),
            log_level=resolve_first(
                overrides.get("log_level"), _env_value(env, ENV_LOG_LEVEL), "WARNING"
            ).upper(),
        )
