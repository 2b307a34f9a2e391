from __future__ import annotations

import hashlib
import hmac
from typing import Mapping, cast

from prwarden.models import CommentClassification, ReviewComment, ReviewWebhookEvent


MAX_ACTIONABLE_BODY_CHARS = 10_000
ACKNOWLEDGMENT = "🤖 Addressing this comment. Will push a fix shortly."
DEFAULT_AGENT = "debugger"
REVIEW_EVENT_NAME = "pull_request_review"
CHANGES_REQUESTED = "changes_requested"
SIGNATURE_PREFIX = "sha256="

# Approval is checked first and wins when a comment matches both lists.
APPROVAL_PATTERNS: tuple[str, ...] = ("lgtm", "looks good", "approved", "👍", ":+1:")
CHANGE_REQUEST_PATTERNS: tuple[str, ...] = (
    "fix",
    "please",
    "could you",
    "should",
    "refactor",
    "change",
    "update",
)

# First match wins.
AGENT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("typescript-pro", ("typescript", "type")),
    ("test-engineer", ("test", "coverage", "mock")),
    ("performance-engineer", ("performance", "optimize", "slow")),
    ("security-auditor", ("security", "vulnerability", "xss")),
    ("refactoring-specialist", ("refactor", "clean up", "simplify")),
)


def classify_comment(body: str) -> CommentClassification:
    if len(body) > MAX_ACTIONABLE_BODY_CHARS:
        return "not_actionable"
    lowered = body.lower()
    if any(pattern in lowered for pattern in APPROVAL_PATTERNS):
        return "not_actionable"
    if any(pattern in lowered for pattern in CHANGE_REQUEST_PATTERNS):
        return "actionable"
    return "not_actionable"


def is_change_request(comment: ReviewComment) -> bool:
    return classify_comment(comment.body) == "actionable"


def is_own_acknowledgment(body: str) -> bool:
    """Our acknowledgment replies show up in the next poll and mention "fix"."""
    return body.strip() == ACKNOWLEDGMENT


def suggest_agent(body: str) -> str:
    lowered = body.lower()
    for agent, keywords in AGENT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return agent
    return DEFAULT_AGENT


def summarize_comment(body: str, *, limit: int = 72) -> str:
    for line in body.splitlines():
        stripped = line.strip()
        if stripped:
            if len(stripped) <= limit:
                return stripped
            return f"{stripped[: limit - 3]}..."
    return "Address review feedback"


def webhook_comment_id(review_id: str) -> str:
    return f"review-{review_id}"


def parse_review_webhook(payload: Mapping[str, object]) -> ReviewWebhookEvent | None:
    """Extract the fields the monitor needs from a ``pull_request_review`` payload.

    Returns None when the payload does not carry a review and a pull request.
    The review state is lower-cased; state filtering is left to the caller.
    """
    review = _as_mapping(payload.get("review"))
    pull_request = _as_mapping(payload.get("pull_request"))
    if review is None or pull_request is None:
        return None

    number = pull_request.get("number")
    if isinstance(number, bool) or not isinstance(number, int):
        return None
    head = _as_mapping(pull_request.get("head")) or {}
    review_id = review.get("id")

    return ReviewWebhookEvent(
        review_id=None if review_id is None else str(review_id),
        state=str(review.get("state") or "").lower(),
        body=str(review.get("body") or ""),
        pr_number=number,
        pr_title=str(pull_request.get("title") or ""),
        branch=str(head.get("ref") or ""),
    )


def _as_mapping(value: object) -> Mapping[str, object] | None:
    if not isinstance(value, Mapping):
        return None
    return cast(Mapping[str, object], value)


def verify_webhook_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check an ``X-Hub-Signature-256`` header (``sha256=<hex>``) in constant time."""
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    supplied = signature[len(SIGNATURE_PREFIX) :].lower().encode("utf-8")
    return hmac.compare_digest(supplied, digest.encode("ascii"))
