"""Tests for config.py: file/env layering and startup warnings."""

import json

from jarvis.config import DEFAULTS, config_warnings, load_config, save_config


def test_defaults_when_nothing_set(tmp_path):
    cfg = load_config(path=str(tmp_path / "none.json"), env={})
    assert cfg["buffer"]["analysis_interval"] == 30
    assert cfg["buffer"]["silence_threshold"] == 120
    assert cfg["server"]["port"] == 3000
    assert cfg["environment"] == "development"
    # defaults are not shared between loads
    cfg["buffer"]["analysis_interval"] = 1
    assert DEFAULTS["buffer"]["analysis_interval"] == 30


def test_file_overlay_keeps_other_keys(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"buffer": {"analysis_interval": 10}, "omi": {"api_base_url": "http://omi"}}))
    cfg = load_config(path=str(path), env={})
    assert cfg["buffer"]["analysis_interval"] == 10
    assert cfg["buffer"]["merge_window"] == 2.0
    assert cfg["omi"]["api_base_url"] == "http://omi"


def test_env_overrides_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"server": {"port": 4000}}))
    env = {
        "PORT": "5000",
        "OPENROUTER_API_KEY": "or-key",
        "TOOL_CALLING_ENABLED": "true",
        "ENCRYPTION_KEY": "k" * 32,
        "NODE_ENV": "production",
    }
    cfg = load_config(path=str(path), env=env)
    assert cfg["server"]["port"] == 5000
    assert cfg["assistant"]["openrouter_api_key"] == "or-key"
    assert cfg["assistant"]["tool_calling_enabled"] is True
    assert cfg["security"]["encryption_key"] == "k" * 32
    assert cfg["environment"] == "production"


def test_config_path_from_env(tmp_path):
    path = tmp_path / "alt.json"
    path.write_text(json.dumps({"environment": "staging"}))
    assert load_config(env={"JARVIS_CONFIG": str(path)})["environment"] == "staging"


def test_bad_values_are_ignored(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{broken")
    cfg = load_config(path=str(path), env={"PORT": "not-a-port"})
    assert cfg["server"]["port"] == 3000


def test_save_round_trip(tmp_path):
    path = tmp_path / "nested" / "config.json"
    save_config({"buffer": {"session_ttl": 60}}, path=str(path))
    assert load_config(path=str(path), env={})["buffer"]["session_ttl"] == 60


class TestWarnings:
    def test_bare_config_warns(self, tmp_path):
        warnings = config_warnings(load_config(path=str(tmp_path / "none.json"), env={}))
        assert any("ENCRYPTION_KEY" in w for w in warnings)
        assert any("no chat model" in w for w in warnings)
        assert any("JARVIS_WEBHOOK_SECRET" in w for w in warnings)

    def test_weak_key_in_production(self, tmp_path):
        env = {"ENCRYPTION_KEY": "short", "NODE_ENV": "production"}
        warnings = config_warnings(load_config(path=str(tmp_path / "none.json"), env=env))
        assert any("32+ characters" in w for w in warnings)

    def test_fully_configured(self, tmp_path):
        env = {
            "ENCRYPTION_KEY": "k" * 40,
            "OLLAMA_BASE_URL": "http://localhost:11434",
            "JARVIS_WEBHOOK_SECRET": "s3cret",
        }
        assert config_warnings(load_config(path=str(tmp_path / "none.json"), env=env)) == []
