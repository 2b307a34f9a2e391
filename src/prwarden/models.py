from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal


CommentClassification = Literal["actionable", "not_actionable"]
TaskStatus = Literal["pushed", "no_changes", "gates_failed", "refused", "failed"]


@dataclass(frozen=True)
class RepoIdentity:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class PullRequest:
    number: int
    title: str
    branch: str


@dataclass(frozen=True)
class ReviewComment:
    id: str
    body: str
    path: str
    line: int


@dataclass(frozen=True)
class RemediationTask:
    pr_number: int
    branch: str
    path: str
    line: int
    comment_id: str
    comment_body: str
    suggested_agent: str


@dataclass(frozen=True)
class ReviewWebhookEvent:
    review_id: str | None
    state: str
    body: str
    pr_number: int
    pr_title: str
    branch: str


@dataclass(frozen=True)
class ExecutionContext:
    original_branch: str | None = None
    stash_created: bool = False


@dataclass(frozen=True)
class QualityResult:
    passed: bool
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class QualityGateResult:
    passed: bool
    errors: tuple[str, ...]
    tests: QualityResult
    type_check: QualityResult
    lint: QualityResult

    @classmethod
    def aggregate(
        cls, *, tests: QualityResult, type_check: QualityResult, lint: QualityResult
    ) -> QualityGateResult:
        gates = (tests, type_check, lint)
        return cls(
            passed=all(gate.passed for gate in gates),
            errors=_concat_errors(gates),
            tests=tests,
            type_check=type_check,
            lint=lint,
        )


@dataclass(frozen=True)
class TaskOutcome:
    task: RemediationTask
    status: TaskStatus
    commit_sha: str | None = None
    errors: tuple[str, ...] = ()
    escalated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in ("pushed", "no_changes")


def _concat_errors(results: Iterable[QualityResult]) -> tuple[str, ...]:
    errors: list[str] = []
    for result in results:
        errors.extend(result.errors)
    return tuple(errors)
