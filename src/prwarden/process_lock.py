from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict, dataclass
import json
import logging
import os
from pathlib import Path
import secrets
from typing import Iterator

from prwarden.observability import log_event
from prwarden.state import format_timestamp, utc_now


LOGGER = logging.getLogger("prwarden.process_lock")
LOCK_FILENAME = "service.lock"


class ProcessLockError(RuntimeError):
    """Another live process already owns the working copy."""


@dataclass(frozen=True)
class LockOwner:
    pid: int | None = None
    command: str | None = None
    acquired_at: str | None = None
    token: str | None = None


@contextmanager
def working_copy_lock(*, state_dir: Path, command: str) -> Iterator[LockOwner]:
    """Hold ``<state_dir>/service.lock`` for the duration of the block.

    A lock left behind by a process that no longer exists is taken over.
    """
    lock = WorkingCopyLock(state_dir / LOCK_FILENAME, command=command)
    owner = lock.acquire()
    try:
        yield owner
    finally:
        lock.release()


class WorkingCopyLock:
    def __init__(self, path: Path, *, command: str) -> None:
        self.path = path
        self.command = command
        self._token: str | None = None

    def acquire(self) -> LockOwner:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._take_over_stale_lock():
                    continue
                raise ProcessLockError(self._held_message()) from None

            owner = LockOwner(
                pid=os.getpid(),
                command=self.command,
                acquired_at=format_timestamp(utc_now()),
                token=secrets.token_hex(16),
            )
            try:
                os.write(fd, (json.dumps(asdict(owner), sort_keys=True) + "\n").encode("utf-8"))
            except OSError:
                os.close(fd)
                self.path.unlink(missing_ok=True)
                raise
            os.close(fd)
            self._token = owner.token
            log_event(LOGGER, "process_lock_acquired", path=str(self.path), pid=owner.pid)
            return owner
        raise ProcessLockError(self._held_message())

    def release(self) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        # Only remove the file if it is still ours.
        if read_lock_owner(self.path).token != token:
            return
        self.path.unlink(missing_ok=True)
        log_event(LOGGER, "process_lock_released", path=str(self.path))

    def _take_over_stale_lock(self) -> bool:
        owner = read_lock_owner(self.path)
        if owner.pid is None or owner.pid == os.getpid() or pid_is_running(owner.pid):
            return False
        log_event(LOGGER, "process_lock_stale", path=str(self.path), stale_pid=owner.pid)
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            return False
        return True

    def _held_message(self) -> str:
        owner = read_lock_owner(self.path)
        detail = ", ".join(
            part
            for part in (
                f"pid={owner.pid}" if owner.pid is not None else "",
                f"command={owner.command}" if owner.command else "",
            )
            if part
        )
        suffix = f" ({detail})" if detail else ""
        return (
            f"Another prwarden service is using this working copy{suffix}. "
            f"Lock file: {self.path}"
        )


def read_lock_owner(path: Path) -> LockOwner:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return LockOwner()
    if not isinstance(payload, dict):
        return LockOwner()
    pid = payload.get("pid")
    command = payload.get("command")
    acquired_at = payload.get("acquired_at")
    token = payload.get("token")
    return LockOwner(
        pid=pid if isinstance(pid, int) and not isinstance(pid, bool) else None,
        command=command if isinstance(command, str) else None,
        acquired_at=acquired_at if isinstance(acquired_at, str) else None,
        token=token if isinstance(token, str) else None,
    )


def pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
