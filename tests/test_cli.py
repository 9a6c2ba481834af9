"""Tests for the warren click CLI."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from warren.cli.app import cli


@pytest.fixture
def env(monkeypatch, tmp_path):
    monkeypatch.setenv("WARREN_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("WARREN_GROUPS_DIR", str(tmp_path / "groups"))
    monkeypatch.delenv("WARREN_JID_PREFIXES", raising=False)
    return tmp_path


def _invoke(*args: str):
    return CliRunner().invoke(cli, list(args), obj={})


def test_register_and_list(env):
    result = _invoke(
        "register", "--jid", "tg:-100", "--name", "Research", "--folder", "research",
        "--allow", "browser", "--allow", "gmail-reader",
    )
    assert result.exit_code == 0, result.output
    assert "Registered Research (tg:-100) as 'research'" in result.output

    data = json.loads((env / "data" / "registered_groups.json").read_text())
    assert data["tg:-100"]["folder"] == "research"
    assert sorted(data["tg:-100"]["containerConfig"]["allowDelegation"]) == ["browser", "gmail-reader"]
    assert (env / "groups" / "research").is_dir()

    listed = _invoke("--json", "groups")
    assert listed.exit_code == 0
    groups = json.loads(listed.output)
    assert [g["folder"] for g in groups] == ["research"]


def test_register_rejects_bad_folder(env):
    result = _invoke("register", "--jid", "tg:1", "--name", "x", "--folder", "../escape")
    assert result.exit_code != 0
    assert "Invalid group folder" in result.output


def test_register_rejects_taken_folder(env):
    assert _invoke("register", "--jid", "tg:1", "--name", "a", "--folder", "team").exit_code == 0
    result = _invoke("register", "--jid", "tg:2", "--name", "b", "--folder", "team")
    assert result.exit_code != 0
    assert "already used" in result.output


def test_deregister(env):
    _invoke("register", "--jid", "tg:1", "--name", "a", "--folder", "team")
    assert _invoke("deregister", "tg:1").exit_code == 0
    result = _invoke("deregister", "tg:1")
    assert result.exit_code != 0
    assert "not registered" in result.output


def test_groups_table(env):
    _invoke("register", "--jid", "tg:1", "--name", "Hub", "--folder", "main")
    result = _invoke("--no-color", "groups")
    assert result.exit_code == 0
    assert "Hub" in result.output
    assert "(main)" in result.output


def test_available_lists_known_chats(env):
    (env / "data").mkdir(parents=True, exist_ok=True)
    (env / "data" / "chats.json").write_text(
        json.dumps(
            [
                {"jid": "tg:1", "name": "Old", "last_activity": "2024-01-01T00:00:01Z"},
                {"jid": "tg:2", "name": "New", "last_activity": "2024-01-02T00:00:01Z"},
                {"jid": "wa:3", "name": "Elsewhere", "last_activity": "2024-01-03T00:00:01Z"},
            ]
        )
    )
    _invoke("register", "--jid", "tg:1", "--name", "Old", "--folder", "old")

    result = _invoke("--json", "available")
    assert result.exit_code == 0, result.output
    chats = json.loads(result.output)
    assert [(c["jid"], c["isRegistered"]) for c in chats] == [("tg:2", False), ("tg:1", True)]


def test_reset_memory(env):
    _invoke("register", "--jid", "tg:1", "--name", "a", "--folder", "team")
    state = env / "data" / "sessions" / "team"
    (state / "memory.db").write_text("x")

    result = _invoke("reset-memory", "team")
    assert result.exit_code == 0, result.output
    assert list(state.iterdir()) == []


def test_restart_container(env):
    _invoke("register", "--jid", "tg:1", "--name", "a", "--folder", "team")
    with patch(
        "warren.orchestration.container_manager.ContainerManager.list_containers",
        new=AsyncMock(return_value=[]),
    ) as listing:
        result = _invoke("restart-container", "team")

    assert result.exit_code == 0, result.output
    assert "No running container for team" in result.output
    listing.assert_awaited_once_with("team")


def test_restart_container_unknown_folder(env):
    result = _invoke("restart-container", "ghost")
    assert result.exit_code != 0
    assert "No registered group" in result.output
