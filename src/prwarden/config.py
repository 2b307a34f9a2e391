from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import shlex
import tomllib
from typing import cast


DEFAULT_TEST_COMMAND: tuple[str, ...] = ("pytest", "-q")
DEFAULT_TYPE_CHECK_COMMAND: tuple[str, ...] = ("mypy", ".")
DEFAULT_LINT_COMMAND: tuple[str, ...] = ("ruff", "check", ".")
DEFAULT_COMMIT_ATTRIBUTION = "Co-Authored-By: prwarden <prwarden@users.noreply.github.com>"


@dataclass(frozen=True)
class RuntimeConfig:
    project_dir: Path
    state_dir: Path
    idle_wait_seconds: int = 5
    comment_fetch_workers: int = 4
    queue_capacity: int = 100

    @property
    def state_file(self) -> Path:
        return self.state_dir / "pr-monitor-state.json"

    @property
    def agent_status_file(self) -> Path:
        return self.state_dir / "agent-status.json"


@dataclass(frozen=True)
class RepoConfig:
    owner: str | None = None
    name: str | None = None
    remote: str = "origin"
    webhook_secret: str | None = field(default=None, repr=False)

    @property
    def full_name(self) -> str | None:
        if self.owner is None or self.name is None:
            return None
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class QualityGateConfig:
    test_command: tuple[str, ...] = DEFAULT_TEST_COMMAND
    type_check_command: tuple[str, ...] = DEFAULT_TYPE_CHECK_COMMAND
    lint_command: tuple[str, ...] = DEFAULT_LINT_COMMAND


@dataclass(frozen=True)
class ExecutorConfig:
    max_attempts: int = 2
    commit_attribution: str = DEFAULT_COMMIT_ATTRIBUTION


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repo: RepoConfig
    quality_gates: QualityGateConfig
    executor: ExecutorConfig


class ConfigError(ValueError):
    pass


def default_config(project_dir: Path) -> AppConfig:
    project = project_dir.expanduser().resolve()
    return AppConfig(
        runtime=RuntimeConfig(project_dir=project, state_dir=project / ".oss"),
        repo=RepoConfig(),
        quality_gates=QualityGateConfig(),
        executor=ExecutorConfig(),
    )


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _optional_table(data, "runtime") or {}
    repo_data = _optional_table(data, "repo") or {}
    gates_data = _optional_table(data, "quality_gates") or {}
    executor_data = _optional_table(data, "executor") or {}

    # Relative paths resolve against the config file, not the caller's cwd.
    base = path.expanduser().resolve().parent
    project_dir = _path_with_default(runtime_data, "project_dir", base, base=base)
    runtime = RuntimeConfig(
        project_dir=project_dir,
        state_dir=_path_with_default(runtime_data, "state_dir", project_dir / ".oss", base=base),
        idle_wait_seconds=_int_with_default(runtime_data, "idle_wait_seconds", 5),
        comment_fetch_workers=_int_with_default(runtime_data, "comment_fetch_workers", 4),
        queue_capacity=_int_with_default(runtime_data, "queue_capacity", 100),
    )
    if runtime.idle_wait_seconds < 1:
        raise ConfigError("runtime.idle_wait_seconds must be >= 1")
    if runtime.comment_fetch_workers < 1:
        raise ConfigError("runtime.comment_fetch_workers must be >= 1")
    if runtime.queue_capacity < 1:
        raise ConfigError("runtime.queue_capacity must be >= 1")

    repo = RepoConfig(
        owner=_optional_str(repo_data, "owner"),
        name=_optional_str(repo_data, "name"),
        remote=_str_with_default(repo_data, "remote", "origin"),
        webhook_secret=_optional_str(repo_data, "webhook_secret"),
    )
    if (repo.owner is None) != (repo.name is None):
        raise ConfigError("repo.owner and repo.name must be set together")

    quality_gates = QualityGateConfig(
        test_command=_command_with_default(gates_data, "test_command", DEFAULT_TEST_COMMAND),
        type_check_command=_command_with_default(
            gates_data, "type_check_command", DEFAULT_TYPE_CHECK_COMMAND
        ),
        lint_command=_command_with_default(gates_data, "lint_command", DEFAULT_LINT_COMMAND),
    )

    executor = ExecutorConfig(
        max_attempts=_int_with_default(executor_data, "max_attempts", 2),
        commit_attribution=_str_with_default(
            executor_data, "commit_attribution", DEFAULT_COMMIT_ATTRIBUTION
        ),
    )
    if executor.max_attempts < 1:
        raise ConfigError("executor.max_attempts must be >= 1")

    return AppConfig(
        runtime=runtime,
        repo=repo,
        quality_gates=quality_gates,
        executor=executor,
    )


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _path_with_default(data: dict[str, object], key: str, default: Path, *, base: Path) -> Path:
    value = _optional_str(data, key)
    if value is None:
        return default
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def _command_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, str):
        argv = tuple(shlex.split(value))
    elif isinstance(value, list) and all(isinstance(item, str) for item in value):
        argv = tuple(cast(list[str], value))
    else:
        raise ConfigError(f"{key} must be a command string or a list of strings")
    if not argv:
        raise ConfigError(f"{key} must not be empty")
    return argv
