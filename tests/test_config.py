"""Tests for settings resolution."""

import pytest

from appbridge.config import BridgeSettings, resolve_first
from appbridge.errors import ConfigError


def test_resolve_first_skips_none_only():
    assert resolve_first(None, 0, 5) == 0
    assert resolve_first(None, "", "x") == ""
    assert resolve_first(None, None) is None


class TestBridgeSettings:
    def test_defaults(self):
        settings = BridgeSettings.from_env(env={})
        assert settings.host == "localhost"
        assert settings.port == 9223
        assert settings.remote_host is None
        assert settings.scan_size == 100
        assert settings.log_level == "WARNING"

    def test_environment(self):
        env = {
            "MCP_BRIDGE_HOST": "127.0.0.1",
            "MCP_BRIDGE_PORT": "9300",
            "MCP_BRIDGE_CONNECT_TIMEOUT": "2.5",
            "MCP_BRIDGE_PROBE_TIMEOUT": "0.2",
            "MCP_BRIDGE_LOG_LEVEL": "debug",
        }
        settings = BridgeSettings.from_env(env=env)
        assert settings.host == "127.0.0.1"
        assert settings.port == 9300
        assert settings.connect_timeout == 2.5
        assert settings.probe_timeout == 0.2
        assert settings.log_level == "DEBUG"

    def test_overrides_win(self):
        env = {"MCP_BRIDGE_HOST": "127.0.0.1", "MCP_BRIDGE_PORT": "9300"}
        settings = BridgeSettings.from_env(env=env, host="10.0.0.5", port=9400)
        assert settings.host == "10.0.0.5"
        assert settings.port == 9400

    def test_none_overrides_are_ignored(self):
        settings = BridgeSettings.from_env(env={"MCP_BRIDGE_PORT": "9300"}, port=None)
        assert settings.port == 9300

    def test_blank_variables_are_unset(self):
        settings = BridgeSettings.from_env(env={"MCP_BRIDGE_HOST": "  ", "MCP_BRIDGE_PORT": ""})
        assert settings.host == "localhost"
        assert settings.port == 9223

    def test_remote_host_precedence(self):
        env = {"MCP_BRIDGE_REMOTE_HOST": "10.0.2.2", "TAURI_DEV_HOST": "192.168.1.4"}
        assert BridgeSettings.from_env(env=env).remote_host == "10.0.2.2"
        env = {"TAURI_DEV_HOST": "192.168.1.4"}
        assert BridgeSettings.from_env(env=env).remote_host == "192.168.1.4"

    @pytest.mark.parametrize(
        "name, value",
        [("MCP_BRIDGE_PORT", "abc"), ("MCP_BRIDGE_CONNECT_TIMEOUT", "soon")],
    )
    def test_invalid_values(self, name, value):
        with pytest.raises(ConfigError, match=name):
            BridgeSettings.from_env(env={name: value})
