from __future__ import annotations

import logging
import os
from pathlib import Path
import re
import tempfile

from prwarden.observability import log_event, log_warning_event
from prwarden.shell import CommandError, run
from prwarden.validation import is_protected_branch, validate_branch_name


LOGGER = logging.getLogger("prwarden.git_ops")
_MISSING_LOCAL_BRANCH_PATTERN = re.compile(
    r"pathspec .* did not match|invalid reference|not a commit", re.IGNORECASE
)


class ProtectedBranchError(CommandError):
    """Direct pushes to a protected branch are refused before git is invoked."""

    permanent = True


class GitWorkingCopy:
    """The single shared working copy, driven through argv-only git calls."""

    def __init__(self, repo_path: Path, *, remote: str = "origin") -> None:
        self.repo_path = repo_path
        self.remote = remote

    def current_branch(self) -> str:
        branch = self._git("branch", "--show-current").strip()
        if branch:
            return branch
        # Detached HEAD: remember the commit so it can be checked out again.
        return self._git("rev-parse", "HEAD").strip()

    def has_uncommitted_changes(self) -> bool:
        return bool(self._git("status", "--porcelain").strip())

    def stash_push(self, label: str) -> None:
        log_event(LOGGER, "git_stash_push", label=label)
        self._git("stash", "push", "--include-untracked", "-m", label)

    def stash_pop(self) -> None:
        log_event(LOGGER, "git_stash_pop")
        self._git("stash", "pop")

    def discard_changes(self) -> None:
        """Drop every uncommitted edit, tracked or untracked, in the working copy."""
        log_event(LOGGER, "git_discard_changes")
        self._git("reset", "--hard")
        self._git("clean", "-fd")

    def checkout_branch(self, branch: str) -> None:
        validate_branch_name(branch)
        log_event(LOGGER, "git_checkout", branch=branch)
        try:
            self._git("checkout", branch)
        except CommandError as exc:
            if _MISSING_LOCAL_BRANCH_PATTERN.search(exc.stderr) is None:
                raise
            log_event(LOGGER, "git_checkout_missing_locally", branch=branch)
            self.fetch_branch(branch)
            self._git("checkout", branch)

    def restore_ref(self, ref: str) -> None:
        """Check out a previously recorded branch name or commit sha."""
        log_event(LOGGER, "git_restore_ref", ref=ref)
        self._git("checkout", ref)

    def fetch_branch(self, branch: str) -> None:
        validate_branch_name(branch)
        log_event(LOGGER, "git_fetch", remote=self.remote, branch=branch)
        self._git("fetch", self.remote, branch)

    def pull_latest(self, branch: str) -> None:
        validate_branch_name(branch)
        log_event(LOGGER, "git_pull", remote=self.remote, branch=branch)
        self._git("pull", "--ff-only", self.remote, branch)

    def stage_changes(self) -> None:
        self._git("add", "-A")

    def list_staged_files(self) -> tuple[str, ...]:
        diff = self._git("diff", "--cached", "--name-only").strip()
        return tuple(line for line in diff.splitlines() if line.strip())

    def create_commit(self, message: str) -> str:
        fd, message_path = tempfile.mkstemp(prefix="prwarden-commit-", suffix=".txt")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(message)
            log_event(LOGGER, "git_commit", has_message=bool(message.strip()))
            self._git("commit", "-F", message_path)
        finally:
            try:
                os.unlink(message_path)
            except FileNotFoundError:
                pass
        return self.get_commit_sha()

    def push_to_branch(self, branch: str) -> None:
        if is_protected_branch(branch):
            log_warning_event(LOGGER, "git_push_refused", branch=branch, reason="protected_branch")
            raise ProtectedBranchError(f"Refusing to push directly to protected branch {branch!r}")
        validate_branch_name(branch)
        log_event(LOGGER, "git_push", remote=self.remote, branch=branch)
        try:
            self._git("push", self.remote, branch)
        except Exception as exc:  # noqa: BLE001
            log_event(LOGGER, "git_push_failed", branch=branch, error_type=type(exc).__name__)
            raise

    def get_commit_sha(self) -> str:
        return self._git("rev-parse", "--short", "HEAD").strip()

    def _git(self, *args: str) -> str:
        return run(["git", "-C", str(self.repo_path), *args])
