"""Wire format shared with the MCP bridge plugin.

Requests flow controller -> application, responses and events flow back::

    {"id": "7", "command": "list_windows", "args": {}}
    {"id": "7", "result": [...]}            # success
    {"id": "7", "error": "Window not found"}  # failure
    {"type": "element_picked", "payload": {...}}  # unsolicited event

The plugin's native response shape ``{"id", "success", "data", "error"}`` is
accepted as well.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from appbridge.errors import ProtocolError

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 9223
PORT_RANGE_SIZE = 100


class EndpointKey(NamedTuple):
    """Identity of one application instance."""

    host: str
    port: int

    @classmethod
    def of(cls, host: str, port: int) -> EndpointKey:
        return cls(host.strip().lower(), int(port))

    @property
    def url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"ws://{host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


def discovery_ports(start: int = DEFAULT_PORT, size: int = PORT_RANGE_SIZE) -> range:
    """Inclusive scan range, ``start`` .. ``start + size - 1``."""
    return range(start, start + size)


@dataclass
class Request:
    id: str
    command: str
    args: dict[str, Any] = field(default_factory=dict)

    def encode(self) -> str:
        return json.dumps({"id": self.id, "command": self.command, "args": self.args})


@dataclass
class Response:
    id: str
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Event:
    type: str
    payload: Any = None


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message", "Unknown error"))
    return str(error)


def decode_frame(raw: str | bytes) -> Response | Event:
    """Parse one inbound frame. Raises ProtocolError for anything unrecognised."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Frame is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError(f"Frame is not an object: {type(data).__name__}")

    frame_id = data.get("id")
    if isinstance(frame_id, bool):
        frame_id = None
    if isinstance(frame_id, (str, int)) and frame_id != "":
        frame_id = str(frame_id)
        if "success" in data:
            if data["success"] is False:
                return Response(frame_id, error=_error_message(data.get("error") or "Unknown error"))
            return Response(frame_id, result=data.get("data"))
        if data.get("error") is not None:
            return Response(frame_id, error=_error_message(data["error"]))
        return Response(frame_id, result=data.get("result"))

    event_type = data.get("type")
    if "id" not in data and isinstance(event_type, str) and event_type:
        return Event(event_type, data.get("payload"))
    raise ProtocolError(f"Unrecognised frame keys: {sorted(data)}")
