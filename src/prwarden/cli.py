from __future__ import annotations

import argparse
import json
from pathlib import Path

from prwarden.agent_control import AgentCLI
from prwarden.config import AppConfig, default_config, load_config
from prwarden.observability import configure_logging
from prwarden.registry import AgentRegistryError
from prwarden.service_runner import ServiceRunner, build_service_runner, run_service
from prwarden.state import DedupStateStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="prwarden")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("prwarden.toml"),
        help="Service config file; defaults apply when it does not exist",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        default=None,
        help="Log to stderr: 'low' for operator events, 'high' (default) for everything",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    service_parser = subparsers.add_parser(
        "service", help="Run the background agents and remediate queued review comments"
    )
    service_parser.add_argument(
        "--once", action="store_true", help="Poll every agent once and drain the task queue"
    )
    service_parser.add_argument(
        "--all-agents",
        action="store_true",
        help="Start every registered agent, ignoring the enabled flag",
    )

    agents_parser = subparsers.add_parser("agents", help="Inspect and configure agents")
    agents_subparsers = agents_parser.add_subparsers(dest="agents_command", required=True)
    agents_subparsers.add_parser("list", help="List registered agents")
    status_parser = agents_subparsers.add_parser("status", help="Show agent status")
    status_parser.add_argument("name", nargs="?", help="Agent name; all agents when omitted")
    enable_parser = agents_subparsers.add_parser(
        "enable", help="Mark an agent enabled for the next service start"
    )
    enable_parser.add_argument("name")
    disable_parser = agents_subparsers.add_parser(
        "disable", help="Mark an agent disabled for the next service start"
    )
    disable_parser.add_argument("name")
    config_parser = agents_subparsers.add_parser("config", help="Show or update agent config")
    config_parser.add_argument("name")
    config_parser.add_argument("--interval", help='Poll interval such as "30s", "5m" or "1h"')

    state_parser = subparsers.add_parser("state", help="Inspect the dedup state file")
    state_subparsers = state_parser.add_subparsers(dest="state_command", required=True)
    show_parser = state_subparsers.add_parser("show", help="Print counters and poll status")
    show_parser.add_argument("--json", action="store_true", help="Print as JSON")

    dashboard_parser = subparsers.add_parser("dashboard", help="Open the agent health dashboard")
    dashboard_parser.add_argument(
        "--refresh-seconds",
        type=float,
        default=2.0,
        help="How often the dashboard re-reads agent state",
    )

    return parser


def main() -> None:
    args = build_parser().parse_args()
    config = _load_app_config(args.config)
    configure_logging(args.verbose, state_dir=config.runtime.state_dir if args.verbose else None)

    if args.command == "service":
        run_service(config=config, once=bool(args.once), all_agents=bool(args.all_agents))
        return
    if args.command == "agents":
        _cmd_agents(build_service_runner(config), args)
        return
    if args.command == "state":
        _cmd_state_show(DedupStateStore(config.runtime.state_file), as_json=bool(args.json))
        return
    if args.command == "dashboard":
        _cmd_dashboard(build_service_runner(config), refresh_seconds=float(args.refresh_seconds))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _load_app_config(path: Path) -> AppConfig:
    if path.exists():
        return load_config(path)
    return default_config(Path.cwd())


def _cmd_agents(runner: ServiceRunner, args: argparse.Namespace) -> None:
    runner.monitor.state.load()
    agent_cli = AgentCLI(
        runner.registry, runner.agent_config, status_file=runner.registry.status_file
    )

    if args.agents_command == "list":
        entries = agent_cli.list()
        if not entries:
            print("No agents registered.")
            return
        for entry in entries:
            print(
                f"{entry.name} enabled={_flag(entry.enabled)} running={_flag(entry.running)} "
                f"last_poll={entry.last_poll_time or '-'}"
            )
            print(f"  {entry.description}")
        return
    if args.agents_command == "status":
        if args.name is not None:
            named = [(args.name, agent_cli.status(args.name))]
        else:
            named = [(item.name, item.status) for item in agent_cli.status_all()]
        for name, status in named:
            print(
                f"{name} running={_flag(status.is_running)} errors={status.error_count} "
                f"last_poll={status.last_poll_time or '-'} last_error={status.last_error or '-'}"
            )
        return
    if args.agents_command in ("enable", "disable"):
        # The running service reads the flag when it starts; no agent is started here.
        if not runner.registry.has(args.name):
            raise AgentRegistryError(f"Agent {args.name!r} not found")
        enabled = args.agents_command == "enable"
        runner.agent_config.save_agent_config(args.name, enabled=enabled)
        print(f"{args.name}: {'enabled' if enabled else 'disabled'}")
        return
    if args.agents_command == "config":
        agent_config = agent_cli.config(args.name, interval=args.interval)
        print(
            f"{args.name} enabled={_flag(agent_config.enabled)} "
            f"interval_seconds={agent_config.interval_seconds:g} "
            f"max_retries={agent_config.max_retries} "
            f"retry_on_failure={_flag(agent_config.retry_on_failure)}"
        )
        return

    raise RuntimeError(f"Unknown agents command: {args.agents_command}")


def _cmd_state_show(state: DedupStateStore, *, as_json: bool) -> None:
    state.load()
    stats = state.get_stats()
    if as_json:
        payload = {
            "path": str(state.path),
            "processed_comments": state.processed_count(),
            "last_poll_time": state.get_last_poll_time(),
            "last_error": state.get_last_error(),
            "stats": stats,
        }
        print(json.dumps(payload, indent=2))
        return

    print(f"state_file={state.path}")
    print(f"processed_comments={state.processed_count()}")
    print(f"last_poll_time={state.get_last_poll_time() or '-'}")
    print(f"last_error={state.get_last_error() or '-'}")
    for name, count in stats.items():
        print(f"{name}={count}")


def _cmd_dashboard(runner: ServiceRunner, *, refresh_seconds: float) -> None:
    from prwarden.status_tui import run_status_tui

    run_status_tui(
        agent_cli=AgentCLI(
            runner.registry, runner.agent_config, status_file=runner.registry.status_file
        ),
        state=runner.monitor.state,
        refresh_seconds=refresh_seconds,
    )


def _flag(value: bool) -> str:
    return "yes" if value else "no"
