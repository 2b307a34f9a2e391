from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, TextIO, cast


_ROOT_LOGGER: Final[str] = "prwarden"
_FIELD_LIMIT: Final[int] = 160
_LINE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"

# Events an operator wants to see even in low verbosity mode. Warnings and
# errors always pass regardless of event name.
_OPERATOR_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "agent_started",
        "agent_stopped",
        "agent_unhealthy",
        "agent_healthy",
        "task_queued",
        "task_evicted",
        "task_finished",
        "task_escalated",
        "git_push",
        "git_push_refused",
        "github_rate_limited",
        "github_review_reply_failed",
        "service_started",
        "service_stopped",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    """Install handlers on the ``prwarden`` logger.

    ``verbose`` may be ``None``/``False`` (silent), ``True``/``"high"`` (every
    event) or ``"low"`` (operator events, warnings and errors). When
    ``state_dir`` is given, the same stream is appended to
    ``<state_dir>/logs/<UTC date>.log``.
    """
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    mode = _verbose_mode(verbose)
    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(_DailyLogFileHandler(logs_dir=state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LINE_FORMAT))
        if mode == "low":
            handler.addFilter(_OperatorEventFilter())
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(format_event(event, fields))


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(format_event(event, fields))


def format_event(event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_render_value(event)}"]
    parts.extend(f"{key}={_render_value(fields[key])}" for key in sorted(fields))
    return " ".join(parts)


def _render_value(value: object) -> str:
    if value is None:
        rendered = "null"
    elif isinstance(value, bool):
        rendered = "true" if value else "false"
    elif isinstance(value, int | float):
        rendered = str(value)
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _FIELD_LIMIT:
            collapsed = f"{collapsed[:_FIELD_LIMIT]}..."
        rendered = collapsed or "<empty>"
    else:
        rendered = f"<{type(value).__name__}>"

    if "=" in rendered or any(ch.isspace() for ch in rendered):
        return json.dumps(rendered)
    return rendered


def _verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    normalized = verbose.strip().lower()
    if normalized in ("low", "high"):
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _event_name(message: str) -> str | None:
    head = message.split(" ", 1)[0]
    if not head.startswith("event=") or head == "event=":
        return None
    return head[len("event=") :]


class _OperatorEventFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return _event_name(record.getMessage()) in _OPERATOR_EVENTS


class _DailyLogFileHandler(logging.Handler):
    """Append records to one file per UTC day, reopening at midnight."""

    def __init__(self, *, logs_dir: Path) -> None:
        super().__init__()
        self._logs_dir = logs_dir
        self._stream: TextIO | None = None
        self._day = ""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stream = self._current_stream()
            stream.write(self.format(record) + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            self._close_stream()
            super().close()
        finally:
            self.release()

    def _current_stream(self) -> TextIO:
        day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._stream is not None and day == self._day:
            return self._stream
        self._close_stream()
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._stream = (self._logs_dir / f"{day}.log").open("a", encoding="utf-8")
        self._day = day
        return self._stream

    def _close_stream(self) -> None:
        if self._stream is None:
            return
        self._stream.close()
        self._stream = None
