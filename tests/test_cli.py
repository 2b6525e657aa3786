"""Tests for the campsync command line."""

import json
import sys
from unittest.mock import patch

import pytest

import campsync.__main__ as cli
from campsync.__main__ import main


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for key in ("USER_ID", "SERVER_URL", "LOCAL_DB_PATH"):
        monkeypatch.delenv(f"CAMPSYNC_{key}", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        f"client:\n  db_path: {tmp_path / 'local.db'}\n  record_types: [todo, journal]\n"
    )
    return path


def run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["campsync", *argv])
    return main()


def test_no_command_prints_help(monkeypatch, capsys):
    assert run(monkeypatch) == 1
    assert "usage" in capsys.readouterr().out


def test_device_id_is_stable(monkeypatch, capsys, config_file):
    assert run(monkeypatch, "-c", str(config_file), "device-id") == 0
    first = capsys.readouterr().out.strip()

    assert run(monkeypatch, "-c", str(config_file), "device-id") == 0
    second = capsys.readouterr().out.strip()

    assert first.startswith("device_")
    assert first == second


def test_status_json(monkeypatch, capsys, config_file):
    assert run(monkeypatch, "-c", str(config_file), "status", "--json") == 0

    status = json.loads(capsys.readouterr().out)
    assert set(status["record_types"]) == {"todo", "journal"}
    assert status["record_types"]["todo"]["total_records"] == 0
    assert status["user_id"] is None
    assert status["device_id"].startswith("device_")


def test_sync_requires_user(monkeypatch, capsys, config_file):
    assert run(monkeypatch, "-c", str(config_file), "sync") == 1
    assert "user_id" in capsys.readouterr().err


def test_purge(monkeypatch, capsys, config_file):
    assert run(monkeypatch, "-c", str(config_file), "purge") == 0

    out = capsys.readouterr().out
    assert "todo: purged 0" in out
    assert "journal: purged 0" in out


def test_config_loaded_once(monkeypatch, capsys, config_file):
    with patch.object(cli, "load_config", wraps=cli.load_config) as loader:
        assert run(monkeypatch, "-c", str(config_file), "status", "--json") == 0

    loader.assert_called_once_with(config_file)
    assert json.loads(capsys.readouterr().out)["record_types"]
