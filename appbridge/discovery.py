"""Find running app instances.

Candidates are tried in stages and discovery stops at the first stage that
answers, unless every match is wanted:

1. the explicit ``host:port``
2. the configured host (``localhost`` by default) at the requested or configured port
3. the remote device host at the configured port
4. every ``localhost`` port in the discovery range, probed concurrently
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from appbridge.client import EndpointClient
from appbridge.config import BridgeSettings
from appbridge.errors import EndpointConnectionError, HandshakeError
from appbridge.protocol import DEFAULT_HOST, EndpointKey, discovery_ports

logger = logging.getLogger(__name__)

Probe = Callable[[EndpointKey, float], Awaitable["EndpointClient | None"]]


@dataclass
class DiscoveryResult:
    clients: list[EndpointClient] = field(default_factory=list)
    failures: dict[EndpointKey, Exception] = field(default_factory=dict)

    @property
    def found(self) -> bool:
        return bool(self.clients)

    @property
    def handshake_failures(self) -> list[HandshakeError]:
        return [e for e in self.failures.values() if isinstance(e, HandshakeError)]


async def connect_probe(key: EndpointKey, timeout: float) -> EndpointClient | None:
    """Open a bare client. Raises EndpointConnectionError when nothing listens."""
    client = EndpointClient(key.host, key.port, connect_timeout=timeout)
    await client.connect()
    return client


class Discovery:
    def __init__(self, settings: BridgeSettings | None = None, probe: Probe | None = None):
        self.settings = settings or BridgeSettings.from_env()
        self.probe = probe or connect_probe

    def stages(self, host: str | None = None, port: int | None = None) -> list[list[EndpointKey]]:
        s = self.settings
        stages: list[list[EndpointKey]] = []
        if host and port:
            stages.append([EndpointKey.of(host, port)])
        stages.append([EndpointKey.of(s.host, port or s.port)])
        remote = host or s.remote_host
        if remote and remote.strip().lower() != DEFAULT_HOST:
            stages.append([EndpointKey.of(remote, s.port)])
        stages.append(
            [EndpointKey.of(DEFAULT_HOST, p) for p in discovery_ports(s.port, s.scan_size)]
        )
        return stages

    async def discover(
        self,
        host: str | None = None,
        port: int | None = None,
        *,
        want_all: bool = False,
    ) -> DiscoveryResult:
        """Probe candidates stage by stage. Never raises for "nothing found"."""
        result = DiscoveryResult()
        seen: set[EndpointKey] = set()
        for index, stage in enumerate(self.stages(host, port)):
            keys = [k for k in stage if k not in seen]
            seen.update(keys)
            if not keys:
                continue
            timeout = self.settings.connect_timeout if len(keys) == 1 else self.settings.probe_timeout
            found = await self._probe_all(keys, timeout, result)
            logger.debug("Discovery stage %d: %d/%d answered", index + 1, len(found), len(keys))
            for client in found:
                if client not in result.clients:
                    result.clients.append(client)
            if result.clients and not want_all:
                break
        if not result.clients:
            logger.info("Discovery found no running instance")
        return result

    async def _probe_all(
        self, keys: list[EndpointKey], timeout: float, result: DiscoveryResult
    ) -> list[EndpointClient]:
        semaphore = asyncio.Semaphore(max(1, self.settings.scan_concurrency))

        async def one(key: EndpointKey) -> EndpointClient | None:
            async with semaphore:
                try:
                    return await self.probe(key, timeout)
                except EndpointConnectionError as exc:
                    result.failures[key] = exc
                    if isinstance(exc, HandshakeError):
                        logger.warning("%s answered but refused the handshake: %s", key, exc)
                    return None

        answers = await asyncio.gather(*(one(key) for key in keys))
        return [client for client in answers if client is not None]
