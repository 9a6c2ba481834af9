"""Tests for WarrenConfig loading, normalization and path resolution."""

from __future__ import annotations

from warren.config import AssistantConfig, DelegationConfig, QueueConfig, WarrenConfig, _coerce_str_list


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("WARREN_DATA_DIR", str(tmp_path / "data"))
    for var in (
        "WARREN_MAX_CONCURRENT_SESSIONS",
        "WARREN_MAX_DELEGATION_CONTAINERS",
        "WARREN_DELEGATION_DEFAULT_TIMEOUT",
        "WARREN_DELEGATION_MAX_TIMEOUT",
        "WARREN_ASSISTANT_NAME",
    ):
        monkeypatch.delenv(var, raising=False)

    cfg = WarrenConfig()

    assert cfg.queue.max_concurrent_sessions == 5
    assert cfg.delegation.max_delegation_containers == 3
    assert cfg.delegation.default_timeout == 300
    assert cfg.delegation.max_timeout == 1800
    assert cfg.assistant.default_trigger == "@Andy"
    assert cfg.assistant.main_group == "main"


def test_paths_derived_from_data_dir(monkeypatch, tmp_path):
    data_dir = tmp_path / "custom"
    monkeypatch.setenv("WARREN_DATA_DIR", str(data_dir))

    cfg = WarrenConfig()

    assert data_dir.is_dir()
    assert cfg.paths.ipc_dir == data_dir / "ipc"
    assert cfg.paths.sessions_dir == data_dir / "sessions"
    assert cfg.paths.registry_file == data_dir / "registered_groups.json"
    assert cfg.paths.groups_dir.is_absolute()


def test_delegation_limits_normalized(monkeypatch):
    monkeypatch.setenv("WARREN_MAX_DELEGATION_CONTAINERS", "0")
    monkeypatch.setenv("WARREN_DELEGATION_MAX_TIMEOUT", "600")
    monkeypatch.setenv("WARREN_DELEGATION_DEFAULT_TIMEOUT", "900")
    monkeypatch.setenv("WARREN_IPC_POLL_INTERVAL", "0")

    cfg = DelegationConfig()

    assert cfg.max_delegation_containers == 1
    assert cfg.max_timeout == 600
    assert cfg.default_timeout == 600
    assert cfg.ipc_poll_interval == 0.05


def test_queue_limits_normalized(monkeypatch):
    monkeypatch.setenv("WARREN_MAX_CONCURRENT_SESSIONS", "-3")
    assert QueueConfig().max_concurrent_sessions == 1


def test_assistant_name_and_prefixes(monkeypatch):
    monkeypatch.setenv("WARREN_ASSISTANT_NAME", "  Warren ")
    monkeypatch.setenv("WARREN_JID_PREFIXES", "tg:, wa:")

    cfg = AssistantConfig()

    assert cfg.default_trigger == "@Warren"
    assert cfg.jid_prefixes == ["tg:", "wa:"]


def test_coerce_str_list_forms():
    assert _coerce_str_list("tg:") == ["tg:"]
    assert _coerce_str_list("a, b,,c") == ["a", "b", "c"]
    assert _coerce_str_list('["x", "y"]') == ["x", "y"]
    assert _coerce_str_list(["  a ", ""]) == ["a"]
    assert _coerce_str_list(42) == ["42"]
    assert _coerce_str_list("") == []
    assert _coerce_str_list(None) == []
