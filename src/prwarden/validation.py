"""Allow-list checks applied to identifiers before they reach a subprocess argv."""

from __future__ import annotations

import re
from typing import Final


MAX_PR_NUMBER: Final[int] = 999_999_999
MAX_COMMENT_ID_LEN: Final[int] = 64
PROTECTED_BRANCHES: Final[frozenset[str]] = frozenset({"main", "master"})

_COMMENT_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
_BRANCH_PATTERN = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9/_.-]*[A-Za-z0-9])?")


class ValidationError(ValueError):
    """Malformed identifier rejected before any external command was built."""

    permanent = True


def validate_pr_number(pr_number: object) -> int:
    if isinstance(pr_number, bool) or not isinstance(pr_number, int):
        raise ValidationError(f"Invalid PR number: {pr_number!r}")
    if pr_number < 1 or pr_number > MAX_PR_NUMBER:
        raise ValidationError(f"Invalid PR number: {pr_number!r}")
    return pr_number


def validate_comment_id(comment_id: object) -> str:
    if not isinstance(comment_id, str) or len(comment_id) > MAX_COMMENT_ID_LEN:
        raise ValidationError(f"Invalid comment ID: {comment_id!r}")
    if _COMMENT_ID_PATTERN.fullmatch(comment_id) is None:
        raise ValidationError(f"Invalid comment ID: {comment_id!r}")
    return comment_id


def validate_branch_name(branch: object) -> str:
    if not isinstance(branch, str) or _BRANCH_PATTERN.fullmatch(branch) is None:
        raise ValidationError(f"Invalid branch name: {branch!r}")
    if ".." in branch or "//" in branch or branch.endswith(".lock"):
        raise ValidationError(f"Invalid branch name: {branch!r}")
    return branch


def is_protected_branch(branch: str) -> bool:
    return branch in PROTECTED_BRANCHES
