"""Bounded retry for the window-registration race.

An app can accept the WebSocket before its webview windows are registered
with the plugin. Commands sent in that gap fail with a "window not found"
style error that clears up on its own a moment later.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from appbridge.errors import RemoteCommandError

if TYPE_CHECKING:
    from appbridge.client import EndpointClient

logger = logging.getLogger(__name__)

REGISTRATION_RACE = re.compile(
    r"(window|webview)\b.*\bnot (found|registered|ready)"
    r"|no (window|webview)s? (available|found|registered)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_delay: float = 0.1
    max_delay: float = 2.0
    pattern: re.Pattern[str] = REGISTRATION_RACE

    def is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, RemoteCommandError) and bool(
            self.pattern.search(exc.remote_message)
        )

    def delays(self) -> Iterator[float]:
        """Delays between attempts: doubling, capped, one fewer than attempts."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= 2


DEFAULT_RETRY_POLICY = RetryPolicy()


async def execute_with_retry(
    client: EndpointClient,
    command: str,
    args: dict[str, Any] | None = None,
    timeout: float | None = None,
    *,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """Run ``client.execute``, retrying only registration-race failures.

    Every attempt is a fresh request with its own correlation id.
    """
    delays = policy.delays()
    attempt = 1
    while True:
        try:
            return await client.execute(command, args, timeout)
        except RemoteCommandError as exc:
            if not policy.is_transient(exc):
                raise
            delay = next(delays, None)
            if delay is None:
                logger.warning(
                    "%s still failing after %d attempts on %s: %s",
                    command, attempt, client.key, exc.remote_message,
                )
                raise
            logger.debug(
                "%s hit registration race on %s (attempt %d), retrying in %.2fs",
                command, client.key, attempt, delay,
            )
            await sleep(delay)
            attempt += 1
