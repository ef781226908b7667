#!/usr/bin/env python3
"""
MCP Bridge Server
Exposes app automation tools to MCP clients (Claude, Cursor, ...).
Connects over WebSocket to the MCP bridge plugin running inside each app.
"""

import json

from mcp.server.fastmcp import FastMCP

from appbridge.config import BridgeSettings
from appbridge.log import configure_logging
from appbridge.registry import SessionRegistry

settings = BridgeSettings.from_env()
registry = SessionRegistry(settings)

mcp = FastMCP(
    "mcp-bridge",
    instructions=(
        "Automation tools for running apps that embed the MCP bridge plugin. "
        "Call driver_session with action 'start' before any other tool."
    ),
)


def text_result(data) -> str:
    """Format result as string for MCP tool return."""
    if isinstance(data, (dict, list)):
        return json.dumps(data, indent=2)
    return str(data)


def _target(app_identifier: str):
    return app_identifier or None


# ── Session Management ──────────────────────────────────────────


@mcp.tool()
async def driver_session(
    action: str, host: str = "", port: int = 0, app_identifier: str = ""
) -> str:
    """Start, stop or inspect automation sessions with running apps.
    action: 'start' connects (scanning ports 9223-9322 when nothing else answers),
    'stop' disconnects one app (app_identifier) or all apps, 'status' reports connections.
    The most recently connected app becomes the default target.
    Status returns one object for a single app, or a list with isDefault for several."""
    if action == "start":
        result = await registry.start(_target(app_identifier), host or None, port or None)
        return text_result(result.to_dict())
    if action == "stop":
        stopped = await registry.stop(_target(app_identifier))
        return text_result({"stopped": [s.status() for s in stopped]})
    if action == "status":
        return text_result(registry.status(_target(app_identifier)))
    raise ValueError(f"Unknown action {action!r}; expected start, stop or status")


# ── IPC ─────────────────────────────────────────────────────────


@mcp.tool()
async def ipc_execute_command(
    command: str, args: str = "", app_identifier: str = ""
) -> str:
    """Invoke a backend IPC command in the app and return its result.
    args: JSON object of command arguments.
    app_identifier: port, host:port or bundle ID; defaults to the default app."""
    payload = {"command": command, "args": json.loads(args) if args else {}}
    return text_result(
        await registry.execute(
            "invoke_tauri", payload, identifier=_target(app_identifier)
        )
    )


# ── Webview ─────────────────────────────────────────────────────


@mcp.tool()
async def webview_execute_js(
    script: str, window_id: str = "", app_identifier: str = ""
) -> str:
    """Execute JavaScript in the app's webview and return the JSON-serializable result.
    Use IIFE syntax for scripts that return values: "(() => { return 1; })()".
    app_identifier: port, host:port or bundle ID; defaults to the default app."""
    params = {"script": script}
    if window_id:
        params["windowLabel"] = window_id
    return text_result(
        await registry.execute(
            "execute_js", params, identifier=_target(app_identifier)
        )
    )


@mcp.tool()
async def list_windows(app_identifier: str = "") -> str:
    """List the app's webview windows with their labels.
    app_identifier: port, host:port or bundle ID; defaults to the default app."""
    return text_result(
        await registry.execute("list_windows", identifier=_target(app_identifier))
    )


# ── Entry Point ─────────────────────────────────────────────────


def main() -> None:
    configure_logging(settings.log_level)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
