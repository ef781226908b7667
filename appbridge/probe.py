#!/usr/bin/env python3
"""List running apps that expose the MCP bridge plugin."""

import argparse
import asyncio
import json
import sys

from appbridge.config import BridgeSettings
from appbridge.errors import BridgeError
from appbridge.log import configure_logging
from appbridge.registry import SessionRegistry


async def _discover(settings: BridgeSettings, host: str | None, port: int | None) -> list[dict]:
    async with SessionRegistry(settings) as registry:
        await registry.discovery.discover(host, port, want_all=True)
        return [s.status() for s in registry.sessions]


def _print_endpoints(endpoints: list[dict], as_json: bool) -> None:
    if as_json:
        print(json.dumps(endpoints, indent=2))
        return
    for endpoint in endpoints:
        print(f"{endpoint['host']}:{endpoint['port']} {endpoint['identifier'] or '-'}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Scan for running apps with the MCP bridge plugin enabled."
    )
    parser.add_argument("--host", help="Remote device host to probe as well.")
    parser.add_argument("--port", type=int, help="First port of the scan range.")
    parser.add_argument(
        "--json", action="store_true", help="Print endpoints as a JSON array."
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log probe activity.")
    args = parser.parse_args(argv)

    try:
        settings = BridgeSettings.from_env(port=args.port, remote_host=args.host)
        configure_logging("DEBUG" if args.verbose else settings.log_level)
        endpoints = asyncio.run(_discover(settings, args.host, args.port))
    except BridgeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not endpoints:
        print("No running app found.", file=sys.stderr)
        return 2
    _print_endpoints(endpoints, args.json)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
