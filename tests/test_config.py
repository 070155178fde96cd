"""Tests for config loading, saving and the cached accessor."""

import json

import pytest

from scriptbridge.config.access import get_config
from scriptbridge.config.loader import camel_to_snake, load_config, save_config, snake_to_camel
from scriptbridge.config.schema import Config


def test_defaults():
    """Defaults match the documented limits."""
    config = Config()
    assert config.sandbox.timeout_ms == 30_000
    assert config.sandbox.inherit_env == []
    assert "json" in config.sandbox.allowed_modules
    assert config.rate_limit.max_calls == 150
    assert config.rate_limit.window_ms == 60_000


def test_load_camel_case_file(tmp_path):
    """camelCase keys on disk map to snake_case fields."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"sandbox": {"timeoutMs": 1234}, "rateLimit": {"maxCalls": 5}}))
    config = load_config(path)
    assert config.sandbox.timeout_ms == 1234
    assert config.rate_limit.max_calls == 5


def test_load_invalid_file_raises_with_hint(tmp_path):
    """Broken files raise ValueError mentioning the path."""
    path = tmp_path / "config.json"
    path.write_text("{not json")
    with pytest.raises(ValueError, match="Failed to load config"):
        load_config(path)


def test_save_round_trip_and_cache_refresh(tmp_path):
    """save_config writes camelCase and invalidates the cached config."""
    path = tmp_path / "config.json"
    first = get_config(config_path=path)
    assert first.sandbox.timeout_ms == 30_000
    updated = Config()
    updated.sandbox.timeout_ms = 5_000
    save_config(updated, path)
    assert "timeoutMs" in json.loads(path.read_text())["sandbox"]
    assert get_config(config_path=path).sandbox.timeout_ms == 5_000


def test_env_overrides(monkeypatch):
    """SCRIPTBRIDGE_* environment variables override nested defaults."""
    monkeypatch.setenv("SCRIPTBRIDGE_SANDBOX__TIMEOUT_MS", "777")
    assert Config().sandbox.timeout_ms == 777


def test_get_config_uses_env_path(tmp_path, monkeypatch):
    """SCRIPTBRIDGE_CONFIG selects the file used by get_config()."""
    path = tmp_path / "custom.json"
    path.write_text(json.dumps({"logging": {"level": "DEBUG"}}))
    monkeypatch.setenv("SCRIPTBRIDGE_CONFIG", str(path))
    assert get_config(force_reload=True).logging.level == "DEBUG"


def test_key_case_helpers():
    assert camel_to_snake("maxMessageBytes") == "max_message_bytes"
    assert snake_to_camel("stderr_tail_lines") == "stderrTailLines"
