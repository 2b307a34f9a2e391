from __future__ import annotations

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from prwarden.agent_control import AgentCLI, AgentListEntry, NamedAgentStatus
from prwarden.state import DedupStateStore, StatName


_ERROR_MAX_CHARS = 60
_STAT_LABELS: tuple[tuple[StatName, str], ...] = (
    ("comments_processed", "Comments Processed"),
    ("tasks_queued", "Tasks Queued"),
    ("tasks_completed", "Tasks Completed"),
    ("tasks_failed", "Tasks Failed"),
)


class StatusApp(App[None]):
    """Read-only view of agent health and the monitor's counters."""

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        agent_cli: AgentCLI,
        state: DedupStateStore,
        refresh_seconds: float = 2.0,
    ) -> None:
        super().__init__()
        self._agent_cli = agent_cli
        self._state = state
        self._refresh_seconds = refresh_seconds

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Agents", classes="panel-title")
            yield DataTable(id="agents-table")
            yield Static("Counters", classes="panel-title")
            yield DataTable(id="stats-table")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one("#agents-table", DataTable).add_columns(
            "Agent", "Enabled", "Running", "Errors", "Last Poll", "Last Error"
        )
        self.query_one("#stats-table", DataTable).add_columns("Counter", "Value")
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def refresh_data(self) -> None:
        self._state.load()
        entries = self._agent_cli.list()
        statuses = {item.name: item for item in self._agent_cli.status_all()}

        agents = self.query_one("#agents-table", DataTable)
        agents.clear(columns=False)
        for row in _agent_rows(entries, statuses):
            agents.add_row(*row)

        stats = self._state.get_stats()
        stats_table = self.query_one("#stats-table", DataTable)
        stats_table.clear(columns=False)
        for name, label in _STAT_LABELS:
            stats_table.add_row(label, str(stats[name]))

        self.query_one("#summary", Static).update(
            _summary_text(
                agent_count=len(entries),
                processed_count=self._state.processed_count(),
                last_poll_time=self._state.get_last_poll_time(),
                last_error=self._state.get_last_error(),
            )
        )


def run_status_tui(
    *,
    agent_cli: AgentCLI,
    state: DedupStateStore,
    refresh_seconds: float,
) -> None:
    StatusApp(agent_cli=agent_cli, state=state, refresh_seconds=refresh_seconds).run()


def _agent_rows(
    entries: list[AgentListEntry], statuses: dict[str, NamedAgentStatus]
) -> list[tuple[str, ...]]:
    rows: list[tuple[str, ...]] = []
    for entry in entries:
        named = statuses.get(entry.name)
        error_count = named.status.error_count if named is not None else 0
        last_error = named.status.last_error if named is not None else None
        rows.append(
            (
                entry.name,
                _render_flag(entry.enabled),
                _render_flag(entry.running),
                str(error_count),
                entry.last_poll_time or "-",
                _truncate(last_error or "-", _ERROR_MAX_CHARS),
            )
        )
    return rows


def _summary_text(
    *,
    agent_count: int,
    processed_count: int,
    last_poll_time: str | None,
    last_error: str | None,
) -> str:
    return (
        f"agents={agent_count} processed_comments={processed_count} "
        f"last_poll={last_poll_time or 'never'}\n"
        f"last_error={_truncate(last_error, _ERROR_MAX_CHARS) if last_error else '-'}"
    )


def _render_flag(value: bool) -> str:
    return "yes" if value else "no"


def _truncate(text: str, limit: int) -> str:
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return f"{compact[: limit - 3]}..."
