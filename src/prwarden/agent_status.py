from __future__ import annotations

from datetime import datetime
import json
import logging
import os
from pathlib import Path
import threading
from typing import Callable, Final, Mapping

from prwarden.background_agent import AgentStatus
from prwarden.observability import log_event, log_warning_event
from prwarden.process_lock import pid_is_running
from prwarden.state import format_timestamp, utc_now


LOGGER = logging.getLogger("prwarden.agent_status")
AGENT_STATUS_FILENAME: Final[str] = "agent-status.json"


class AgentStatusFile:
    """Supervision snapshot written by the service for other processes to read.

    The service rewrites it whenever an agent starts, stops, or finishes a
    poll. Readers treat every agent as stopped once the writing process is
    gone, so a crashed service never shows up as running.
    """

    def __init__(self, path: Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.path = path
        self._clock = clock
        self._lock = threading.Lock()

    def write(self, statuses: Mapping[str, AgentStatus]) -> None:
        payload = {
            "pid": os.getpid(),
            "updatedAt": format_timestamp(self._clock()),
            "agents": {
                name: {
                    "isRunning": status.is_running,
                    "lastPollTime": status.last_poll_time,
                    "errorCount": status.error_count,
                    "lastError": status.last_error,
                }
                for name, status in statuses.items()
            },
        }
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(f".{self.path.name}.tmp")
            tmp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
            os.replace(tmp_path, self.path)

    def read(self) -> dict[str, AgentStatus]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            log_warning_event(
                LOGGER,
                "agent_status_read_failed",
                path=str(self.path),
                error_type=type(exc).__name__,
            )
            return {}
        if not isinstance(data, dict) or not isinstance(data.get("agents"), dict):
            log_warning_event(LOGGER, "agent_status_read_failed", path=str(self.path))
            return {}

        pid = data.get("pid")
        writer_alive = isinstance(pid, int) and not isinstance(pid, bool) and pid_is_running(pid)
        if not writer_alive:
            log_event(LOGGER, "agent_status_writer_gone", path=str(self.path), pid=pid)

        statuses: dict[str, AgentStatus] = {}
        for name, entry in data["agents"].items():
            if not isinstance(entry, dict):
                continue
            statuses[str(name)] = _status_from_entry(entry, writer_alive=writer_alive)
        return statuses


def _status_from_entry(entry: dict[str, object], *, writer_alive: bool) -> AgentStatus:
    last_poll_time = entry.get("lastPollTime")
    error_count = entry.get("errorCount")
    last_error = entry.get("lastError")
    return AgentStatus(
        is_running=writer_alive and entry.get("isRunning") is True,
        last_poll_time=last_poll_time if isinstance(last_poll_time, str) else None,
        error_count=(
            error_count
            if isinstance(error_count, int) and not isinstance(error_count, bool)
            else 0
        ),
        last_error=last_error if isinstance(last_error, str) else None,
    )
