from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
import re
import time
from typing import cast
from urllib.parse import urlencode

from prwarden.models import PullRequest, RepoIdentity, ReviewComment
from prwarden.observability import log_event, log_warning_event
from prwarden.shell import CommandError, run
from prwarden.validation import validate_comment_id, validate_pr_number


LOGGER = logging.getLogger("prwarden.github_gateway")
_PAGE_SIZE = 100
# gh pages through results itself up to this many open PRs.
OPEN_PR_LIMIT = 1000
_RATE_LIMIT_PATTERN = re.compile(r"rate limit|secondary rate|abuse detection", re.IGNORECASE)
_REMOTE_URL_PATTERN = re.compile(r"github\.com[:/]([^/\s]+)/([^/\s]+?)(?:\.git)?/?$")
_REPO_PART_PATTERN = re.compile(r"[A-Za-z0-9_.-]+")


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub read failure; the next poll may succeed."""


class RateLimitError(GitHubPollingError):
    """GitHub throttled the request. Callers should back off, not retry immediately."""

    def __init__(self, message: str, *, retry_after_seconds: int | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


@dataclass(frozen=True)
class GitHubGateway:
    """Typed access to the ``gh`` CLI for one repository.

    Identifiers are validated before any argv is built. Request bodies travel as
    JSON on stdin, so comment text never becomes part of a command line.
    """

    repo_path: Path
    remote: str = "origin"
    configured_identity: RepoIdentity | None = None
    _identity_cache: dict[str, RepoIdentity] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    def resolve_repo_identity(self) -> RepoIdentity:
        if self.configured_identity is not None:
            return self.configured_identity
        cached = self._identity_cache.get("identity")
        if cached is not None:
            return cached

        url = run(
            ["git", "-C", str(self.repo_path), "remote", "get-url", self.remote]
        ).strip()
        identity = parse_remote_url(url)
        self._identity_cache["identity"] = identity
        log_event(LOGGER, "github_repo_resolved", repo_full_name=identity.full_name)
        return identity

    def list_open_prs(self) -> list[PullRequest]:
        identity = self.resolve_repo_identity()
        raw = self._gh(
            [
                "pr",
                "list",
                "--repo",
                identity.full_name,
                "--state",
                "open",
                "--json",
                "number,title,headRefName",
                "--limit",
                str(OPEN_PR_LIMIT),
            ]
        )
        payload = json.loads(raw) if raw.strip() else []
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list of pull requests")

        pull_requests: list[PullRequest] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            head_obj = _as_object_dict(item_obj.get("head"))
            branch = item_obj.get("headRefName") or (head_obj.get("ref") if head_obj else None)
            pull_requests.append(
                PullRequest(
                    number=_as_int(item_obj.get("number"), field="number"),
                    title=_as_string(item_obj.get("title")),
                    branch=_as_string(branch),
                )
            )
        if len(payload) >= OPEN_PR_LIMIT:
            log_warning_event(
                LOGGER,
                "github_pr_list_truncated",
                repo_full_name=identity.full_name,
                limit=OPEN_PR_LIMIT,
            )
        log_event(LOGGER, "github_read", endpoint="open_pull_requests", count=len(pull_requests))
        return pull_requests

    def get_review_comments(self, pr_number: int) -> list[ReviewComment]:
        validate_pr_number(pr_number)
        identity = self.resolve_repo_identity()
        comments: list[ReviewComment] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{identity.full_name}/pulls/{pr_number}/comments?{query}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of review comments")

            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                line = item_obj.get("line")
                if line is None:
                    line = item_obj.get("original_line")
                comments.append(
                    ReviewComment(
                        id=str(_as_int(item_obj.get("id"), field="id")),
                        body=_as_string(item_obj.get("body")),
                        path=_as_string(item_obj.get("path")),
                        line=0 if line is None else _as_int(line, field="line"),
                    )
                )
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_review_comments",
            pr_number=pr_number,
            count=len(comments),
        )
        return comments

    def reply_to_comment(self, pr_number: int, comment_id: str, body: str) -> None:
        validate_pr_number(pr_number)
        validate_comment_id(comment_id)
        identity = self.resolve_repo_identity()
        path = f"/repos/{identity.full_name}/pulls/{pr_number}/comments/{comment_id}/replies"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_review_reply_failed",
                pr_number=pr_number,
                comment_id=comment_id,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_review_reply_posted", pr_number=pr_number, comment_id=comment_id)

    def _gh(self, args: list[str], *, input_text: str | None = None) -> str:
        try:
            return run(["gh", *args], cwd=self.repo_path, input_text=input_text)
        except CommandError as exc:
            if is_rate_limit_message(exc.stderr) or is_rate_limit_message(exc.stdout):
                log_warning_event(LOGGER, "github_rate_limited", command=args[0])
                raise RateLimitError("GitHub API rate limit exceeded") from exc
            raise

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper != "GET":
            stdin_payload = json.dumps(payload) if payload is not None else None
            args = ["api", "--method", method_upper, path]
            if stdin_payload is not None:
                args.extend(["--input", "-"])
            raw = self._gh(args, input_text=stdin_payload)
            return json.loads(raw) if raw.strip() else {}

        cmd = ["gh", "api", "--method", "GET"]
        etag = self._etags_by_path.get(path)
        if etag:
            cmd.extend(["--header", f"If-None-Match: {etag}"])
        cmd.extend(["--include", path])

        raw = run(cmd, cwd=self.repo_path, check=False)
        try:
            status_code, headers, body = _parse_http_response(raw)
            if _is_rate_limited_response(status_code, headers, body):
                retry_after = _retry_after_seconds(headers, now=time.time())
                log_warning_event(
                    LOGGER,
                    "github_rate_limited",
                    path=path,
                    status_code=status_code,
                    retry_after_seconds=retry_after,
                )
                raise RateLimitError(
                    f"GitHub API rate limit exceeded for {path}",
                    retry_after_seconds=retry_after,
                )

            if status_code == 304:
                cached_payload = self._cached_get_payload_by_path.get(path)
                if cached_payload is None:
                    raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                return cached_payload

            if status_code < 200 or status_code >= 300:
                message = body.strip() or "<empty>"
                raise RuntimeError(f"GitHub API request failed with status {status_code}: {message}")

            payload_obj = json.loads(body)
            etag = headers.get("etag")
            if etag:
                self._etags_by_path[path] = etag
                self._cached_get_payload_by_path[path] = payload_obj
            return payload_obj
        except RateLimitError:
            raise
        except Exception as exc:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubPollingError(f"GitHub polling GET failed for path {path}: {exc}") from exc


def parse_remote_url(url: str) -> RepoIdentity:
    match = _REMOTE_URL_PATTERN.search(url.strip())
    if match is None:
        raise RuntimeError(f"Cannot parse GitHub remote: {url!r}")
    owner, name = match.group(1), match.group(2)
    if _REPO_PART_PATTERN.fullmatch(owner) is None or _REPO_PART_PATTERN.fullmatch(name) is None:
        raise RuntimeError(f"Cannot parse GitHub remote: {url!r}")
    return RepoIdentity(owner=owner, name=name)


def is_rate_limit_message(text: str) -> bool:
    return _RATE_LIMIT_PATTERN.search(text) is not None


def _is_rate_limited_response(status_code: int, headers: dict[str, str], body: str) -> bool:
    if status_code == 429:
        return True
    if status_code != 403:
        return False
    return headers.get("x-ratelimit-remaining") == "0" or is_rate_limit_message(body)


def _retry_after_seconds(headers: dict[str, str], *, now: float) -> int | None:
    retry_after = headers.get("retry-after", "")
    if retry_after.isdigit():
        return int(retry_after)
    reset_at = headers.get("x-ratelimit-reset", "")
    if reset_at.isdigit():
        return max(0, int(reset_at) - int(now))
    return None


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    lines = raw.replace("\r\n", "\n").split("\n")

    # gh may print interim responses; the last status line is the real one.
    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index
    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2 or not status_parts[1].isdigit():
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")
    status_code = int(status_parts[1])

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    return status_code, headers, "\n".join(lines[body_start:])


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")
