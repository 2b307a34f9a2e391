from __future__ import annotations

import json
from pathlib import Path

import pytest

from prwarden.agent_config import (
    DEFAULT_AGENT_CONFIG,
    AgentConfig,
    AgentConfigStore,
    default_project_path,
    merge_configs,
    parse_interval,
)
from prwarden.config import ConfigError
from prwarden.observability import configure_logging


def _write(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


def _store(tmp_path: Path) -> AgentConfigStore:
    return AgentConfigStore(
        project_path=tmp_path / "project" / ".oss" / "agents.json",
        global_path=tmp_path / "home" / ".oss" / "agents.json",
    )


@pytest.mark.parametrize(
    ("value", "seconds"),
    [("30s", 30), ("5m", 300), ("1h", 3600), (" 2m ", 120)],
)
def test_parse_interval(value: str, seconds: int) -> None:
    assert parse_interval(value) == seconds


@pytest.mark.parametrize("value", ["5", "5d", "m", "-5m", "1.5h", "0s", ""])
def test_parse_interval_rejects_bad_values(value: str) -> None:
    with pytest.raises(ConfigError):
        parse_interval(value)


def test_unknown_agent_gets_defaults(tmp_path: Path) -> None:
    assert _store(tmp_path).get_agent_config("pr-monitor") == DEFAULT_AGENT_CONFIG
    assert DEFAULT_AGENT_CONFIG == AgentConfig(
        enabled=False, interval_seconds=300, max_retries=3, retry_on_failure=True
    )


def test_project_fields_override_global_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _write(
        store.global_path,
        {"agents": {"pr-monitor": {"enabled": True, "interval": 60000, "maxRetries": 5}}},
    )
    _write(store.project_path, {"agents": {"pr-monitor": {"interval": 120000}}})

    assert store.get_agent_config("pr-monitor") == AgentConfig(
        enabled=True, interval_seconds=120, max_retries=5, retry_on_failure=True
    )


def test_merge_configs_is_field_level() -> None:
    merged = merge_configs(
        {"a": {"enabled": True, "interval": 1000}, "b": {"enabled": False}},
        {"a": {"interval": 2000}, "c": {"enabled": True}},
    )

    assert merged == {
        "a": {"enabled": True, "interval": 2000},
        "b": {"enabled": False},
        "c": {"enabled": True},
    }


def test_save_writes_camel_case_milliseconds(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _write(store.project_path, {"agents": {"other": {"enabled": True}}})

    saved = store.save_agent_config(
        "pr-monitor", enabled=True, interval_seconds=90, max_retries=1, retry_on_failure=False
    )

    assert saved == AgentConfig(
        enabled=True, interval_seconds=90, max_retries=1, retry_on_failure=False
    )
    payload = json.loads(store.project_path.read_text(encoding="utf-8"))
    assert payload == {
        "agents": {
            "other": {"enabled": True},
            "pr-monitor": {
                "enabled": True,
                "interval": 90000,
                "maxRetries": 1,
                "retryOnFailure": False,
            },
        }
    }
    assert not store.global_path.exists()


def test_save_merges_into_existing_entry(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_agent_config("pr-monitor", interval_seconds=60)

    saved = store.save_agent_config("pr-monitor", enabled=True)

    assert saved.enabled is True
    assert saved.interval_seconds == 60


def test_save_rejects_bad_values(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(ConfigError):
        store.save_agent_config("pr-monitor", interval_seconds=0)
    with pytest.raises(ConfigError):
        store.save_agent_config("pr-monitor", max_retries=-1)
    assert not store.project_path.exists()


def test_unreadable_file_is_ignored_with_warning(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    store = _store(tmp_path)
    store.project_path.parent.mkdir(parents=True)
    store.project_path.write_text("{broken", encoding="utf-8")
    configure_logging(verbose="low")

    assert store.load_project() == {}
    assert "event=agent_config_unreadable" in capsys.readouterr().err


def test_wrong_shape_is_ignored(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _write(store.project_path, {"agents": ["pr-monitor"]})

    assert store.load_project() == {}


@pytest.mark.parametrize(
    "entry",
    [
        {"enabled": "yes"},
        {"interval": "5m"},
        {"interval": 0},
        {"interval": True},
        {"maxRetries": -1},
        {"retryOnFailure": 1},
        {"name": 3},
    ],
)
def test_invalid_entry_fields_raise(tmp_path: Path, entry: dict[str, object]) -> None:
    store = _store(tmp_path)
    _write(store.project_path, {"agents": {"pr-monitor": entry}})

    with pytest.raises(ConfigError):
        store.get_agent_config("pr-monitor")


def test_display_name_is_kept(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _write(store.project_path, {"agents": {"pr-monitor": {"name": "PR Monitor"}}})

    assert store.get_agent_config("pr-monitor").name == "PR Monitor"


def test_default_project_path(tmp_path: Path) -> None:
    assert default_project_path(tmp_path) == tmp_path / ".oss" / "agents.json"
