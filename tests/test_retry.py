"""Tests for the registration-race retry policy."""

import pytest

from appbridge.errors import CommandTimeoutError, EndpointConnectionError, RemoteCommandError
from appbridge.retry import RetryPolicy, execute_with_retry


class ScriptedClient:
    """Fails with the queued errors, then succeeds."""

    def __init__(self, errors, result="ok"):
        self.key = "localhost:9223"
        self.errors = list(errors)
        self.result = result
        self.calls = []

    async def execute(self, command, args=None, timeout=None):
        self.calls.append((command, args, timeout))
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def race(message="Window 'main' not found"):
    return RemoteCommandError("execute_js", message)


class TestRetryPolicy:
    def test_delays_double_up_to_cap(self):
        policy = RetryPolicy(max_attempts=7, initial_delay=0.1, max_delay=1.0)
        assert list(policy.delays()) == pytest.approx([0.1, 0.2, 0.4, 0.8, 1.0, 1.0])

    def test_delays_one_fewer_than_attempts(self):
        assert len(list(RetryPolicy(max_attempts=1).delays())) == 0
        assert len(list(RetryPolicy(max_attempts=5).delays())) == 4

    @pytest.mark.parametrize(
        "message",
        [
            "Window 'main' not found",
            "Webview main not ready",
            "window not registered yet",
            "No window available",
            "no webviews registered",
        ],
    )
    def test_transient_messages(self, message):
        assert RetryPolicy().is_transient(race(message))

    @pytest.mark.parametrize(
        "error",
        [
            RemoteCommandError("execute_js", "ReferenceError: foo is not defined"),
            RemoteCommandError("invoke_tauri", "Unsupported Tauri command: x"),
            CommandTimeoutError("timed out"),
            EndpointConnectionError("gone"),
        ],
    )
    def test_other_errors_are_not_transient(self, error):
        assert not RetryPolicy().is_transient(error)


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_k_races(self):
        client = ScriptedClient([race(), race(), race()])
        sleep = RecordingSleep()
        result = await execute_with_retry(
            client, "execute_js", {"script": "1"}, 2.0, sleep=sleep
        )
        assert result == "ok"
        assert len(client.calls) == 4
        assert all(call == ("execute_js", {"script": "1"}, 2.0) for call in client.calls)
        assert sleep.delays == sorted(sleep.delays)
        assert sleep.delays == pytest.approx([0.1, 0.2, 0.4])

    @pytest.mark.asyncio
    async def test_exhausting_attempts_raises_last_error(self):
        errors = [race(f"Window 'main' not found ({n})") for n in range(6)]
        client = ScriptedClient(errors)
        sleep = RecordingSleep()
        policy = RetryPolicy(max_attempts=5)
        with pytest.raises(RemoteCommandError) as exc_info:
            await execute_with_retry(client, "execute_js", policy=policy, sleep=sleep)
        assert exc_info.value.remote_message == "Window 'main' not found (4)"
        assert len(client.calls) == 5
        assert len(sleep.delays) == 4

    @pytest.mark.asyncio
    async def test_delay_never_exceeds_ceiling(self):
        client = ScriptedClient([race()] * 9)
        sleep = RecordingSleep()
        policy = RetryPolicy(max_attempts=10, initial_delay=0.5, max_delay=2.0)
        await execute_with_retry(client, "list_windows", policy=policy, sleep=sleep)
        assert max(sleep.delays) == 2.0
        assert sleep.delays == sorted(sleep.delays)

    @pytest.mark.asyncio
    async def test_other_remote_error_is_not_retried(self):
        client = ScriptedClient([RemoteCommandError("execute_js", "SyntaxError")])
        sleep = RecordingSleep()
        with pytest.raises(RemoteCommandError, match="SyntaxError"):
            await execute_with_retry(client, "execute_js", sleep=sleep)
        assert len(client.calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self):
        client = ScriptedClient([CommandTimeoutError("slow")])
        with pytest.raises(CommandTimeoutError):
            await execute_with_retry(client, "execute_js", sleep=RecordingSleep())
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_connection_error_is_not_retried(self):
        client = ScriptedClient([EndpointConnectionError("gone")])
        with pytest.raises(EndpointConnectionError):
            await execute_with_retry(client, "execute_js", sleep=RecordingSleep())
        assert len(client.calls) == 1
