from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
import logging
from pathlib import Path
import threading
from typing import Callable, Iterator, TypeVar

from prwarden.config import ExecutorConfig
from prwarden.feedback_loop import summarize_comment
from prwarden.git_ops import GitWorkingCopy, ProtectedBranchError
from prwarden.models import ExecutionContext, QualityGateResult, RemediationTask, TaskOutcome
from prwarden.observability import log_event, log_warning_event
from prwarden.quality_gates import QualityGateRunner
from prwarden.shell import CommandError
from prwarden.validation import ValidationError, is_protected_branch


LOGGER = logging.getLogger("prwarden.executor")
STASH_LABEL = "prwarden: auto-stash"

T = TypeVar("T")
FixHook = Callable[[RemediationTask, Path], None]


class QualityGateError(RuntimeError):
    """At least one gate failed. Transient, so the gates are run again."""

    permanent = False

    def __init__(self, result: QualityGateResult) -> None:
        super().__init__("Quality gates failed: " + "; ".join(result.errors))
        self.result = result


def is_permanent_error(exc: BaseException) -> bool:
    return bool(getattr(exc, "permanent", False))


def build_commit_message(task: RemediationTask, *, attribution: str) -> str:
    lines = [
        f"fix: Address PR #{task.pr_number} comment",
        "",
        summarize_comment(task.comment_body),
        "",
        f"Addresses comment: {task.comment_id}",
    ]
    if task.path:
        lines.append(f"File: {task.path}:{task.line}")
    lines.append(f"Suggested agent: {task.suggested_agent}")
    if attribution:
        lines.extend(["", attribution])
    return "\n".join(lines) + "\n"


class RemediationExecutor:
    """Runs one remediation task at a time on the shared working copy.

    Every task is bracketed by :meth:`borrow_working_copy`, which records the
    current branch, stashes local edits, and puts both back afterwards even
    when the task fails. Concurrent callers wait for the working copy.
    """

    def __init__(
        self,
        working_copy: GitWorkingCopy,
        gates: QualityGateRunner,
        config: ExecutorConfig | None = None,
        *,
        apply_fix: FixHook | None = None,
    ) -> None:
        self.working_copy = working_copy
        self.gates = gates
        self.config = config or ExecutorConfig()
        self._apply_fix = apply_fix
        self._slot = threading.Lock()
        self._flag_lock = threading.Lock()
        self._context = ExecutionContext()
        self._needs_escalation = False
        self._escalations = 0

    @property
    def working_dir(self) -> Path:
        return self.working_copy.repo_path

    def save_context(self) -> None:
        original_branch = self.working_copy.current_branch()
        stash_created = False
        if self.working_copy.has_uncommitted_changes():
            self.working_copy.stash_push(STASH_LABEL)
            stash_created = True
        self._context = ExecutionContext(
            original_branch=original_branch, stash_created=stash_created
        )
        log_event(
            LOGGER,
            "context_saved",
            original_branch=original_branch,
            stash_created=stash_created,
        )

    def restore_context(self) -> None:
        context = self._context
        if context.original_branch is None:
            return
        try:
            # The caller's own edits are in the stash; anything left is the task's.
            self.working_copy.discard_changes()
            self.working_copy.restore_ref(context.original_branch)
            if context.stash_created:
                self.working_copy.stash_pop()
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "context_restore_failed",
                original_branch=context.original_branch,
                stash_created=context.stash_created,
                error_type=type(exc).__name__,
            )
            raise
        finally:
            self._context = ExecutionContext()
        log_event(LOGGER, "context_restored", original_branch=context.original_branch)

    def get_context(self) -> ExecutionContext:
        return self._context

    @contextmanager
    def borrow_working_copy(self) -> Iterator[ExecutionContext]:
        with self._slot:
            self.save_context()
            try:
                yield self._context
            finally:
                self.restore_context()

    def checkout(self, branch: str) -> None:
        self.working_copy.checkout_branch(branch)
        self.working_copy.pull_latest(branch)

    def validate_quality_gates(self) -> QualityGateResult:
        with ThreadPoolExecutor(max_workers=3) as pool:
            tests = pool.submit(self.gates.run_tests)
            type_check = pool.submit(self.gates.run_type_check)
            lint = pool.submit(self.gates.run_lint)
            return QualityGateResult.aggregate(
                tests=tests.result(),
                type_check=type_check.result(),
                lint=lint.result(),
            )

    def stage(self) -> tuple[str, ...]:
        self.working_copy.stage_changes()
        return self.working_copy.list_staged_files()

    def create_commit(self, task: RemediationTask) -> str:
        message = build_commit_message(task, attribution=self.config.commit_attribution)
        return self.working_copy.create_commit(message)

    def push(self, branch: str) -> None:
        self.working_copy.push_to_branch(branch)

    def execute_with_retry(self, action: Callable[[], T], max_attempts: int | None = None) -> T:
        attempts = self.config.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        for attempt in range(1, attempts + 1):
            try:
                return action()
            except Exception as exc:  # noqa: BLE001
                if is_permanent_error(exc):
                    raise
                if attempt == attempts:
                    with self._flag_lock:
                        self._needs_escalation = True
                        self._escalations += 1
                    log_warning_event(
                        LOGGER,
                        "retry_exhausted",
                        attempts=attempts,
                        error_type=type(exc).__name__,
                    )
                    raise
                log_event(
                    LOGGER,
                    "retry_scheduled",
                    attempt=attempt,
                    max_attempts=attempts,
                    error_type=type(exc).__name__,
                )
        raise AssertionError("unreachable")

    def needs_escalation(self) -> bool:
        with self._flag_lock:
            return self._needs_escalation

    def clear_escalation(self) -> None:
        with self._flag_lock:
            self._needs_escalation = False

    def execute_task(self, task: RemediationTask, apply_fix: FixHook | None = None) -> TaskOutcome:
        """Fix, verify, commit and push one task. Failures come back as a TaskOutcome."""
        log_event(
            LOGGER,
            "task_started",
            pr_number=task.pr_number,
            branch=task.branch,
            comment_id=task.comment_id,
        )
        if is_protected_branch(task.branch):
            log_warning_event(
                LOGGER, "task_refused", pr_number=task.pr_number, branch=task.branch
            )
            return self._finish(
                TaskOutcome(
                    task=task,
                    status="refused",
                    errors=(f"Refusing to remediate protected branch {task.branch!r}",),
                )
            )

        escalations_before = self._escalation_count()
        fix = apply_fix or self._apply_fix
        try:
            with self.borrow_working_copy():
                outcome = self._run_task(task, fix)
        except QualityGateError as exc:
            outcome = TaskOutcome(
                task=task,
                status="gates_failed",
                errors=exc.result.errors,
                escalated=self._escalation_count() > escalations_before,
            )
        except (ValidationError, ProtectedBranchError) as exc:
            outcome = TaskOutcome(task=task, status="refused", errors=(str(exc),))
        except CommandError as exc:
            outcome = TaskOutcome(
                task=task,
                status="failed",
                errors=(str(exc),),
                escalated=self._escalation_count() > escalations_before,
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "task_crashed",
                pr_number=task.pr_number,
                comment_id=task.comment_id,
                error_type=type(exc).__name__,
            )
            outcome = TaskOutcome(
                task=task,
                status="failed",
                errors=(str(exc) or type(exc).__name__,),
                escalated=self._escalation_count() > escalations_before,
            )
        return self._finish(outcome)

    def _run_task(self, task: RemediationTask, fix: FixHook | None) -> TaskOutcome:
        self.execute_with_retry(lambda: self.checkout(task.branch))
        if fix is not None:
            fix(task, self.working_dir)
        self.execute_with_retry(self._require_passing_gates)
        if not self.stage():
            return TaskOutcome(task=task, status="no_changes")
        commit_sha = self.create_commit(task)
        self.execute_with_retry(lambda: self.push(task.branch))
        return TaskOutcome(task=task, status="pushed", commit_sha=commit_sha)

    def _require_passing_gates(self) -> QualityGateResult:
        result = self.validate_quality_gates()
        if not result.passed:
            raise QualityGateError(result)
        return result

    def _escalation_count(self) -> int:
        with self._flag_lock:
            return self._escalations

    def _finish(self, outcome: TaskOutcome) -> TaskOutcome:
        log_event(
            LOGGER,
            "task_finished",
            pr_number=outcome.task.pr_number,
            comment_id=outcome.task.comment_id,
            status=outcome.status,
            commit_sha=outcome.commit_sha,
            escalated=outcome.escalated,
        )
        if outcome.escalated:
            log_warning_event(
                LOGGER,
                "task_escalated",
                pr_number=outcome.task.pr_number,
                comment_id=outcome.task.comment_id,
            )
        return outcome
