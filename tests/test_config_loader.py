import json
from pathlib import Path

import pytest

from mcpgate.config.loader import camel_to_snake, convert_keys, load_config, save_config, snake_to_camel
from mcpgate.config.schema import Config


def test_missing_file_yields_defaults(tmp_path: Path):
    config = load_config(tmp_path / "absent.json")
    assert config.server.host == "127.0.0.1"
    assert config.server.port == 5000
    assert config.server.graceful_shutdown_seconds == 5.0
    assert config.child.command == ""
    assert config.timeouts.long_seconds == 120
    assert config.timeouts.medium_seconds == 60
    assert config.timeouts.default_seconds == 30
    assert config.sessions.default_session_id == "default"
    assert config.sessions.forward_notifications is False


def test_camel_case_file_is_loaded(tmp_path: Path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "server": {"port": 7001, "gracefulShutdownSeconds": 2.5},
                "child": {"command": "npx -y server", "color": False, "env": {"API_KEY": "x", "logLevel": "debug"}},
                "timeouts": {"longSeconds": 10},
                "sessions": {"defaultSessionId": "main", "respawnDead": False},
            }
        ),
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.server.port == 7001
    assert config.server.graceful_shutdown_seconds == 2.5
    assert config.child.command == "npx -y server"
    assert config.child.color is False
    # env var names are not case-converted
    assert config.child.env == {"API_KEY": "x", "logLevel": "debug"}
    assert config.timeouts.long_seconds == 10
    assert config.sessions.default_session_id == "main"
    assert config.sessions.respawn_dead is False


def test_save_writes_camel_case_and_round_trips(tmp_path: Path):
    path = tmp_path / "nested" / "config.json"
    config = Config()
    config.child.command = "node server.js"
    config.child.env = {"MY_TOKEN_VAR": "1"}
    save_config(config, path)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["sessions"]["defaultSessionId"] == "default"
    assert data["child"]["env"] == {"MY_TOKEN_VAR": "1"}
    assert load_config(path) == config


@pytest.mark.parametrize("content", ["{broken", "[1, 2]", '{"server": {"port": 0}}'])
def test_invalid_file_raises_value_error(tmp_path: Path, content):
    path = tmp_path / "config.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ValueError) as exc_info:
        load_config(path)
    assert str(path) in str(exc_info.value)


def test_env_overrides_defaults(monkeypatch):
    monkeypatch.setenv("MCPGATE_SERVER__PORT", "6123")
    monkeypatch.setenv("MCPGATE_CHILD__COMMAND", "uvx mcp-server-time")
    config = Config()
    assert config.server.port == 6123
    assert config.child.command == "uvx mcp-server-time"


def test_case_helpers():
    assert camel_to_snake("defaultSessionId") == "default_session_id"
    assert snake_to_camel("send_initialized_notification") == "sendInitializedNotification"
    assert convert_keys({"a": [{"fooBar": 1}]}) == {"a": [{"foo_bar": 1}]}
