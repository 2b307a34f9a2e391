"""Per-agent settings stored as JSON in ``~/.oss`` and ``<project>/.oss``.

The files are shared with other tools, so they keep their camelCase keys and
millisecond intervals. Everything above this module speaks seconds.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import json
import logging
import os
from pathlib import Path
import re
from typing import cast

from prwarden.config import ConfigError
from prwarden.observability import log_event, log_warning_event


LOGGER = logging.getLogger("prwarden.agent_config")

AGENTS_FILENAME = "agents.json"
DEFAULT_INTERVAL_SECONDS = 300
_INTERVAL_PATTERN = re.compile(r"(\d+)(s|m|h)")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}

RawAgentsConfig = dict[str, dict[str, object]]


@dataclass(frozen=True)
class AgentConfig:
    enabled: bool = False
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    max_retries: int = 3
    retry_on_failure: bool = True
    name: str | None = None


DEFAULT_AGENT_CONFIG = AgentConfig()


def parse_interval(value: str) -> int:
    """Convert ``"30s"``, ``"5m"`` or ``"1h"`` to seconds."""
    match = _INTERVAL_PATTERN.fullmatch(value.strip())
    if match is None:
        raise ConfigError(f'Invalid interval {value!r}. Use a format like "30s", "5m", "1h"')
    seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds < 1:
        raise ConfigError(f"Interval must be positive: {value!r}")
    return seconds


def default_global_path() -> Path:
    return Path.home() / ".oss" / AGENTS_FILENAME


def default_project_path(project_dir: Path) -> Path:
    return project_dir / ".oss" / AGENTS_FILENAME


def merge_configs(global_agents: RawAgentsConfig, project_agents: RawAgentsConfig) -> RawAgentsConfig:
    merged: RawAgentsConfig = {name: dict(fields) for name, fields in global_agents.items()}
    for name, fields in project_agents.items():
        merged.setdefault(name, {}).update(fields)
    return merged


class AgentConfigStore:
    def __init__(self, *, project_path: Path, global_path: Path | None = None) -> None:
        self.project_path = project_path
        self.global_path = global_path if global_path is not None else default_global_path()

    def load_global(self) -> RawAgentsConfig:
        return _read_agents_file(self.global_path)

    def load_project(self) -> RawAgentsConfig:
        return _read_agents_file(self.project_path)

    def get_agent_config(self, name: str) -> AgentConfig:
        merged = merge_configs(self.load_global(), self.load_project())
        raw = merged.get(name)
        if raw is None:
            return DEFAULT_AGENT_CONFIG
        return _agent_config_from_raw(name, raw)

    def save_agent_config(
        self,
        name: str,
        *,
        enabled: bool | None = None,
        interval_seconds: float | None = None,
        max_retries: int | None = None,
        retry_on_failure: bool | None = None,
    ) -> AgentConfig:
        """Merge the given fields into this agent's project entry and write the file."""
        if interval_seconds is not None and interval_seconds <= 0:
            raise ConfigError("interval_seconds must be > 0")
        if max_retries is not None and max_retries < 0:
            raise ConfigError("max_retries must be >= 0")

        agents = self.load_project()
        entry = agents.setdefault(name, {})
        if enabled is not None:
            entry["enabled"] = enabled
        if interval_seconds is not None:
            entry["interval"] = int(round(interval_seconds * 1000))
        if max_retries is not None:
            entry["maxRetries"] = max_retries
        if retry_on_failure is not None:
            entry["retryOnFailure"] = retry_on_failure

        self.project_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.project_path.with_name(f".{self.project_path.name}.tmp")
        tmp_path.write_text(json.dumps({"agents": agents}, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, self.project_path)
        log_event(LOGGER, "agent_config_saved", agent_name=name, path=str(self.project_path))
        return self.get_agent_config(name)


def _read_agents_file(path: Path) -> RawAgentsConfig:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        log_warning_event(
            LOGGER, "agent_config_unreadable", path=str(path), error_type=type(exc).__name__
        )
        return {}

    agents = data.get("agents") if isinstance(data, dict) else None
    if not isinstance(agents, dict):
        log_warning_event(LOGGER, "agent_config_unreadable", path=str(path), error_type="shape")
        return {}
    return {
        str(name): dict(cast(dict[str, object], fields))
        for name, fields in agents.items()
        if isinstance(fields, dict)
    }


def _agent_config_from_raw(name: str, raw: dict[str, object]) -> AgentConfig:
    config = DEFAULT_AGENT_CONFIG
    if "enabled" in raw:
        config = replace(config, enabled=_require_bool(raw, "enabled", name))
    if "interval" in raw:
        interval_ms = raw["interval"]
        if isinstance(interval_ms, bool) or not isinstance(interval_ms, int | float):
            raise ConfigError(f"agents.{name}.interval must be a number of milliseconds")
        if interval_ms <= 0:
            raise ConfigError(f"agents.{name}.interval must be > 0")
        config = replace(config, interval_seconds=interval_ms / 1000)
    if "maxRetries" in raw:
        max_retries = raw["maxRetries"]
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ConfigError(f"agents.{name}.maxRetries must be a non-negative integer")
        config = replace(config, max_retries=max_retries)
    if "retryOnFailure" in raw:
        config = replace(config, retry_on_failure=_require_bool(raw, "retryOnFailure", name))
    display_name = raw.get("name")
    if display_name is not None:
        if not isinstance(display_name, str):
            raise ConfigError(f"agents.{name}.name must be a string")
        config = replace(config, name=display_name)
    return config


def _require_bool(raw: dict[str, object], key: str, name: str) -> bool:
    value = raw[key]
    if not isinstance(value, bool):
        raise ConfigError(f"agents.{name}.{key} must be a boolean")
    return value
