"""Tests for the jarvis CLI commands that work against the local database."""

import json
import time

import pytest

from jarvis import cli
from jarvis.database import JarvisDB


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    db_path = tmp_path / "jarvis.db"
    config_file = tmp_path / "config.json"
    monkeypatch.setenv("JARVIS_DB_PATH", str(db_path))
    monkeypatch.setenv("JARVIS_CONFIG", str(config_file))
    monkeypatch.setattr(cli, "CONFIG_FILE", config_file)
    monkeypatch.setattr("jarvis.config.CONFIG_FILE", config_file)
    return db_path, config_file


def _seed(db_path, *rows):
    db = JarvisDB(str(db_path))
    for session_id, last_activity in rows:
        db.create_session(session_id, last_activity, uid="u1",
                          messages=[{"text": f"hello from {session_id}", "timestamp": last_activity,
                                     "is_user": True}])
    db.close()


def test_no_command_prints_help(capsys):
    with pytest.raises(SystemExit):
        cli.main([])
    assert "usage: jarvis" in capsys.readouterr().out


def test_format_duration():
    assert cli.format_duration(42) == "42s"
    assert cli.format_duration(125) == "2m 5s"
    assert cli.format_duration(7320) == "2h 2m"


def test_parse_value():
    assert cli._parse_value("true") is True
    assert cli._parse_value("30") == 30
    assert cli._parse_value("2.5") == 2.5
    assert cli._parse_value("hello") == "hello"


def test_sessions_lists_rows(cli_env, capsys):
    db_path, _ = cli_env
    _seed(db_path, ("S1", time.time()))
    cli.main(["sessions"])
    out = capsys.readouterr().out
    assert "S1" in out
    assert "hello from S1" in out


def test_sessions_empty(cli_env, capsys):
    cli.main(["sessions", "--uid", "nobody"])
    assert "No sessions found." in capsys.readouterr().out


def test_purge_older_than(cli_env, capsys):
    db_path, _ = cli_env
    now = time.time()
    _seed(db_path, ("old", now - 5 * 3600), ("new", now))
    cli.main(["purge", "--older-than", "2"])
    assert "Purged 1 sessions" in capsys.readouterr().out
    db = JarvisDB(str(db_path))
    assert db.get_session("old") is None
    assert db.get_session("new") is not None
    db.close()


def test_purge_single_and_all(cli_env, capsys):
    db_path, _ = cli_env
    _seed(db_path, ("a", time.time()), ("b", time.time()))
    cli.main(["purge", "--session", "a"])
    cli.main(["purge", "--all"])
    cli.main(["purge", "--all", "--confirm"])
    out = capsys.readouterr().out
    assert "Purged session a" in out
    assert "Use --confirm" in out
    assert "Purged all 1 sessions" in out


def test_audit(cli_env, capsys):
    db_path, _ = cli_env
    _seed(db_path, ("a", time.time()))
    cli.main(["audit"])
    out = capsys.readouterr().out
    assert "Sessions" in out
    assert "Storage" in out


def test_config_set_and_show_masks_secrets(cli_env, capsys, monkeypatch):
    _, config_file = cli_env
    cli.main(["config", "--set", "buffer.analysis_interval=15"])
    assert json.loads(config_file.read_text()) == {"buffer": {"analysis_interval": 15}}

    monkeypatch.setenv("OPENROUTER_API_KEY", "or-very-secret")
    cli.main(["config"])
    out = capsys.readouterr().out
    assert '"analysis_interval": 15' in out
    assert "or-very-secret" not in out
    assert '"openrouter_api_key": "****"' in out


def test_status_not_running(cli_env, capsys, monkeypatch):
    monkeypatch.setattr(cli, "fetch_status", lambda port: None)
    cli.main(["status", "--port", "3999"])
    assert "not running" in capsys.readouterr().out


def test_serve_runs_app_factory(cli_env, monkeypatch):
    calls = {}
    monkeypatch.setattr("uvicorn.run", lambda target, **kwargs: calls.update(target=target, **kwargs))
    cli.main(["serve", "--port", "3100", "--log-level", "DEBUG"])
    assert calls["target"] == "jarvis.receiver:create_app"
    assert calls["factory"] is True
    assert calls["port"] == 3100
    assert calls["log_level"] == "debug"
