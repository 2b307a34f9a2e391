from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import logging
import os
from pathlib import Path
import threading
from typing import Callable, Final, Literal, cast, get_args

from prwarden.observability import log_event, log_warning_event


LOGGER = logging.getLogger("prwarden.state")

COMMENT_TTL: Final[timedelta] = timedelta(days=30)
STATE_FILENAME: Final[str] = "pr-monitor-state.json"

StatName = Literal["comments_processed", "tasks_queued", "tasks_completed", "tasks_failed"]

# The file is shared with external readers, so its keys keep their camelCase names.
_STAT_KEYS: Final[dict[StatName, str]] = {
    "comments_processed": "commentsProcessed",
    "tasks_queued": "tasksQueued",
    "tasks_completed": "tasksCompleted",
    "tasks_failed": "tasksFailed",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DedupStateStore:
    """Processed-comment ids with a 30 day TTL plus monitor counters.

    The whole file is rewritten on every save. A missing or unreadable file
    loads as an empty state; that failure is logged and never raised.
    Expired ids are dropped when loading and again just before saving.
    """

    def __init__(self, path: Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.path = path
        self._clock = clock
        self._lock = threading.Lock()
        self._processed: dict[str, datetime] = {}
        self._last_poll_time: str | None = None
        self._last_error: str | None = None
        self._stats: dict[StatName, int] = _empty_stats()

    def load(self) -> None:
        with self._lock:
            self._reset()
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                self._apply_loaded(data)
            except FileNotFoundError:
                log_event(LOGGER, "state_file_missing", path=str(self.path))
            except (OSError, ValueError, TypeError, KeyError, AttributeError) as exc:
                log_warning_event(
                    LOGGER,
                    "state_load_failed",
                    path=str(self.path),
                    error_type=type(exc).__name__,
                )
                self._reset()
            self._evict_expired()

    def save(self) -> None:
        with self._lock:
            self._evict_expired()
            payload = {
                "processedCommentIds": list(self._processed),
                "processedComments": [
                    {"id": comment_id, "processedAt": format_timestamp(processed_at)}
                    for comment_id, processed_at in self._processed.items()
                ],
                "lastPollTime": self._last_poll_time,
                "lastError": self._last_error,
                "stats": {_STAT_KEYS[name]: count for name, count in self._stats.items()},
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(f".{self.path.name}.tmp")
            tmp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
            os.replace(tmp_path, self.path)
        log_event(LOGGER, "state_saved", path=str(self.path), processed_count=len(self._processed))

    def add_processed_comment(self, comment_id: str) -> None:
        with self._lock:
            self._processed.pop(comment_id, None)
            self._processed[comment_id] = self._clock()

    def is_processed(self, comment_id: str) -> bool:
        with self._lock:
            return comment_id in self._processed

    def processed_count(self) -> int:
        with self._lock:
            return len(self._processed)

    def update_last_poll_time(self) -> None:
        with self._lock:
            self._last_poll_time = format_timestamp(self._clock())

    def get_last_poll_time(self) -> str | None:
        with self._lock:
            return self._last_poll_time

    def set_last_error(self, error: str | None) -> None:
        with self._lock:
            self._last_error = error

    def get_last_error(self) -> str | None:
        with self._lock:
            return self._last_error

    def increment_stat(self, name: str) -> None:
        if name not in _STAT_KEYS:
            raise ValueError(f"Unknown stat: {name!r}")
        with self._lock:
            self._stats[cast(StatName, name)] += 1

    def get_stats(self) -> dict[StatName, int]:
        with self._lock:
            return dict(self._stats)

    def _reset(self) -> None:
        self._processed = {}
        self._last_poll_time = None
        self._last_error = None
        self._stats = _empty_stats()

    def _apply_loaded(self, data: object) -> None:
        if not isinstance(data, dict):
            raise ValueError("state file must hold a JSON object")

        entries = data.get("processedComments")
        if entries is not None:
            for entry in entries:
                self._processed[str(entry["id"])] = _parse_timestamp(str(entry["processedAt"]))
        else:
            # Legacy shape: bare ids without timestamps. Keep them, stamped now.
            migrated_at = self._clock()
            for comment_id in data.get("processedCommentIds") or ():
                self._processed[str(comment_id)] = migrated_at
            if self._processed:
                log_event(LOGGER, "state_legacy_migrated", count=len(self._processed))

        last_poll_time = data.get("lastPollTime")
        self._last_poll_time = last_poll_time if isinstance(last_poll_time, str) else None
        last_error = data.get("lastError")
        self._last_error = last_error if isinstance(last_error, str) else None

        stats = data.get("stats")
        if isinstance(stats, dict):
            for name, key in _STAT_KEYS.items():
                value = stats.get(key)
                if isinstance(value, int) and not isinstance(value, bool):
                    self._stats[name] = value

    def _evict_expired(self) -> None:
        cutoff = self._clock() - COMMENT_TTL
        expired = [
            comment_id
            for comment_id, processed_at in self._processed.items()
            if processed_at < cutoff
        ]
        for comment_id in expired:
            del self._processed[comment_id]
        if expired:
            log_event(LOGGER, "state_entries_expired", count=len(expired))


def _empty_stats() -> dict[StatName, int]:
    return {name: 0 for name in get_args(StatName)}


def default_state_path(project_dir: Path) -> Path:
    return project_dir / ".oss" / STATE_FILENAME
