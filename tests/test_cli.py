from __future__ import annotations

import argparse
import json
from pathlib import Path

import pytest

from prwarden import cli
from prwarden.agent_config import AgentConfigStore
from prwarden.agent_control import AgentCLI
from prwarden.background_agent import AgentStatus
from prwarden.config import AppConfig, default_config
from prwarden.registry import AgentRegistryError
from prwarden.service_runner import ServiceRunner, build_service_runner
from prwarden.state import DedupStateStore


def _runner(tmp_path: Path) -> ServiceRunner:
    return build_service_runner(
        default_config(tmp_path),
        agent_config=AgentConfigStore(
            project_path=tmp_path / ".oss" / "agents.json",
            global_path=tmp_path / "home" / "agents.json",
        ),
    )


def _agents_args(command: str, **extra: object) -> argparse.Namespace:
    values: dict[str, object] = {"agents_command": command, "name": None, "interval": None}
    values.update(extra)
    return argparse.Namespace(**values)


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    service = parser.parse_args(["service", "--once", "--all-agents"])
    assert service.command == "service"
    assert service.once is True
    assert service.all_agents is True
    assert service.verbose is None
    assert service.config == Path("prwarden.toml")

    assert parser.parse_args(["-v", "service"]).verbose == "high"
    assert parser.parse_args(["--verbose", "low", "service"]).verbose == "low"

    config = parser.parse_args(["agents", "config", "pr-monitor", "--interval", "5m"])
    assert (config.agents_command, config.name, config.interval) == ("config", "pr-monitor", "5m")
    assert parser.parse_args(["agents", "status"]).name is None
    assert parser.parse_args(["state", "show", "--json"]).json is True
    assert parser.parse_args(["dashboard", "--refresh-seconds", "5"]).refresh_seconds == 5.0


def test_build_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_main_dispatches_service(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg_path = tmp_path / "prwarden.toml"
    cfg_path.write_text("[executor]\nmax_attempts = 4\n", encoding="utf-8")
    called: dict[str, object] = {}
    monkeypatch.setattr(
        "sys.argv", ["prwarden", "--config", str(cfg_path), "-v", "low", "service", "--once"]
    )
    monkeypatch.setattr(
        cli,
        "configure_logging",
        lambda verbose, state_dir=None: called.update(verbose=verbose, state_dir=state_dir),
    )

    def fake_run_service(*, config: AppConfig, once: bool, all_agents: bool) -> None:
        called.update(config=config, once=once, all_agents=all_agents)

    monkeypatch.setattr(cli, "run_service", fake_run_service)

    cli.main()

    config = called["config"]
    assert isinstance(config, AppConfig)
    assert config.executor.max_attempts == 4
    assert called["once"] is True
    assert called["all_agents"] is False
    assert called["verbose"] == "low"
    assert called["state_dir"] == config.runtime.state_dir


def test_main_uses_defaults_when_config_missing(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("sys.argv", ["prwarden", "state", "show"])
    seen: dict[str, object] = {}
    monkeypatch.setattr(
        cli,
        "_cmd_state_show",
        lambda state, *, as_json: seen.update(path=state.path, as_json=as_json),
    )

    cli.main()

    assert seen == {
        "path": tmp_path.resolve() / ".oss" / "pr-monitor-state.json",
        "as_json": False,
    }


def test_main_dispatches_agents(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("sys.argv", ["prwarden", "agents", "list"])
    seen: list[tuple[ServiceRunner, str]] = []
    monkeypatch.setattr(
        cli, "_cmd_agents", lambda runner, args: seen.append((runner, args.agents_command))
    )

    cli.main()

    assert len(seen) == 1
    assert seen[0][1] == "list"
    assert seen[0][0].registry.list() == ["pr-monitor"]


def test_agents_list(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    runner = _runner(tmp_path)

    cli._cmd_agents(runner, _agents_args("list"))

    out = capsys.readouterr().out
    assert "pr-monitor enabled=no running=no last_poll=-" in out
    assert "Monitors PRs for review comments and queues remediation tasks" in out


def test_agents_enable_and_disable_only_persist_flag(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    runner = _runner(tmp_path)

    cli._cmd_agents(runner, _agents_args("enable", name="pr-monitor"))
    assert runner.agent_config.get_agent_config("pr-monitor").enabled is True
    status = runner.registry.get_agent_status("pr-monitor")
    assert status is not None and status.is_running is False

    cli._cmd_agents(runner, _agents_args("disable", name="pr-monitor"))
    assert runner.agent_config.get_agent_config("pr-monitor").enabled is False

    assert capsys.readouterr().out.splitlines() == ["pr-monitor: enabled", "pr-monitor: disabled"]


def test_agents_enable_unknown_agent_fails(tmp_path: Path) -> None:
    runner = _runner(tmp_path)

    with pytest.raises(AgentRegistryError, match="not found"):
        cli._cmd_agents(runner, _agents_args("enable", name="ghost"))
    assert not runner.agent_config.project_path.exists()


def test_agents_config_sets_interval(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    runner = _runner(tmp_path)

    cli._cmd_agents(runner, _agents_args("config", name="pr-monitor", interval="2m"))

    assert capsys.readouterr().out.strip() == (
        "pr-monitor enabled=no interval_seconds=120 max_retries=3 retry_on_failure=yes"
    )


def test_agents_status(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    runner = _runner(tmp_path)
    state = DedupStateStore(runner.config.runtime.state_file)
    state.load()
    state.update_last_poll_time()
    state.save()

    cli._cmd_agents(runner, _agents_args("status"))
    cli._cmd_agents(runner, _agents_args("status", name="pr-monitor"))

    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    assert lines[0] == lines[1]
    assert lines[0].startswith("pr-monitor running=no errors=0 last_poll=20")
    assert lines[0].endswith("last_error=-")


def test_state_show_text_and_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "state.json"
    state = DedupStateStore(path)
    state.load()
    state.add_processed_comment("101")
    state.increment_stat("tasks_queued")
    state.set_last_error("boom")
    state.save()

    cli._cmd_state_show(DedupStateStore(path), as_json=False)
    text = capsys.readouterr().out.splitlines()
    assert f"state_file={path}" in text
    assert "processed_comments=1" in text
    assert "last_poll_time=-" in text
    assert "last_error=boom" in text
    assert "tasks_queued=1" in text

    cli._cmd_state_show(DedupStateStore(path), as_json=True)
    payload = json.loads(capsys.readouterr().out)
    assert payload == {
        "path": str(path),
        "processed_comments": 1,
        "last_poll_time": None,
        "last_error": "boom",
        "stats": {
            "comments_processed": 0,
            "tasks_queued": 1,
            "tasks_completed": 0,
            "tasks_failed": 0,
        },
    }


def test_dashboard_passes_runner_pieces(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    runner = _runner(tmp_path)
    seen: dict[str, object] = {}

    def fake_run_status_tui(**kwargs: object) -> None:
        seen.update(kwargs)

    monkeypatch.setattr("prwarden.status_tui.run_status_tui", fake_run_status_tui)

    cli._cmd_dashboard(runner, refresh_seconds=3.0)

    assert seen["state"] is runner.monitor.state
    assert seen["refresh_seconds"] == 3.0
    agent_cli = seen["agent_cli"]
    assert isinstance(agent_cli, AgentCLI)
    assert agent_cli.status_file is runner.registry.status_file


def test_agents_commands_report_the_service_published_status(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    service = _runner(tmp_path)
    assert service.registry.status_file is not None
    service.registry.status_file.write(
        {
            "pr-monitor": AgentStatus(
                is_running=True,
                last_poll_time="2026-03-01T12:00:00.000000Z",
                error_count=2,
                last_error="GitHub unreachable",
            )
        }
    )
    runner = _runner(tmp_path)

    cli._cmd_agents(runner, _agents_args("status"))
    cli._cmd_agents(runner, _agents_args("list"))

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == (
        "pr-monitor running=yes errors=2 last_poll=2026-03-01T12:00:00.000000Z "
        "last_error=GitHub unreachable"
    )
    assert lines[1] == (
        "pr-monitor enabled=no running=yes last_poll=2026-03-01T12:00:00.000000Z"
    )
