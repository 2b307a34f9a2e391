from __future__ import annotations

from collections import deque
from concurrent.futures import ThreadPoolExecutor
import json
import logging
import threading
from typing import Mapping

from prwarden.background_agent import AgentMetadata, AgentStatus, BackgroundAgent
from prwarden.feedback_loop import (
    ACKNOWLEDGMENT,
    CHANGES_REQUESTED,
    REVIEW_EVENT_NAME,
    classify_comment,
    is_own_acknowledgment,
    parse_review_webhook,
    suggest_agent,
    verify_webhook_signature,
    webhook_comment_id,
)
from prwarden.github_gateway import GitHubGateway, RateLimitError
from prwarden.models import PullRequest, RemediationTask, ReviewComment, TaskOutcome
from prwarden.observability import log_event, log_warning_event
from prwarden.state import DedupStateStore
from prwarden.validation import ValidationError, validate_branch_name


LOGGER = logging.getLogger("prwarden.pr_monitor")

PR_MONITOR_METADATA = AgentMetadata(
    name="pr-monitor",
    description="Monitors PRs for review comments and queues remediation tasks",
    version="1.0.0",
)
DEFAULT_QUEUE_CAPACITY = 100
DEFAULT_FETCH_WORKERS = 4


class PRMonitorAgent(BackgroundAgent):
    """Turns actionable review comments into queued remediation tasks.

    Comments seen once are never classified again while they are inside the
    store's TTL. The queue is a bounded FIFO: when full, the oldest task is
    dropped to make room.
    """

    metadata = PR_MONITOR_METADATA

    def __init__(
        self,
        state: DedupStateStore,
        github: GitHubGateway,
        *,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
        fetch_workers: int = DEFAULT_FETCH_WORKERS,
        webhook_secret: str | None = None,
    ) -> None:
        if queue_capacity < 1:
            raise ValueError("queue_capacity must be >= 1")
        if fetch_workers < 1:
            raise ValueError("fetch_workers must be >= 1")
        self._state = state
        self._github = github
        self._fetch_workers = fetch_workers
        self._webhook_secret = webhook_secret
        self._queue: deque[RemediationTask] = deque(maxlen=queue_capacity)
        self._queue_lock = threading.Lock()
        self._is_running = False
        self._error_count = 0
        self._last_error: str | None = None

    @property
    def state(self) -> DedupStateStore:
        return self._state

    def initialize(self) -> None:
        self._state.load()

    def start(self) -> None:
        self._is_running = True

    def stop(self) -> None:
        self._is_running = False
        self._state.save()

    def poll(self) -> None:
        try:
            self._poll_once()
        except Exception as exc:  # noqa: BLE001
            self._error_count += 1
            self._last_error = str(exc) or type(exc).__name__
            self._state.set_last_error(self._last_error)
            self._state.save()
            log_event(
                LOGGER,
                "pr_monitor_poll_failed",
                error_type=type(exc).__name__,
                error_count=self._error_count,
            )
            raise
        self._error_count = 0
        self._last_error = None

    def get_status(self) -> AgentStatus:
        return AgentStatus(
            is_running=self._is_running,
            last_poll_time=self._state.get_last_poll_time(),
            error_count=self._error_count,
            last_error=self._last_error,
        )

    def process_signed_webhook(
        self, body: bytes, *, signature: str | None, event_name: str | None = None
    ) -> RemediationTask | None:
        """Verify ``X-Hub-Signature-256`` against the raw body, then process it.

        Without a configured secret every delivery is rejected.
        """
        if self._webhook_secret is None:
            log_warning_event(LOGGER, "webhook_rejected", reason="no_secret")
            return None
        if not verify_webhook_signature(body, signature, self._webhook_secret):
            log_warning_event(
                LOGGER,
                "webhook_rejected",
                reason="invalid_signature" if signature else "missing_signature",
            )
            return None
        try:
            payload = json.loads(body)
        except ValueError:
            log_event(LOGGER, "webhook_ignored", reason="invalid_json")
            return None
        if not isinstance(payload, dict):
            log_event(LOGGER, "webhook_ignored", reason="malformed_payload")
            return None
        return self.process_webhook(payload, event_name=event_name)

    def process_webhook(
        self, payload: Mapping[str, object], *, event_name: str | None = None
    ) -> RemediationTask | None:
        """Queue a task for a ``changes_requested`` review. Other events are ignored."""
        if event_name is not None and event_name != REVIEW_EVENT_NAME:
            log_event(LOGGER, "webhook_ignored", reason="event_name", event_name=event_name)
            return None
        event = parse_review_webhook(payload)
        if event is None:
            log_event(LOGGER, "webhook_ignored", reason="malformed_payload")
            return None
        if event.state != CHANGES_REQUESTED:
            log_event(
                LOGGER,
                "webhook_ignored",
                reason="review_state",
                state=event.state,
                pr_number=event.pr_number,
            )
            return None
        try:
            validate_branch_name(event.branch)
        except ValidationError:
            log_event(
                LOGGER, "webhook_ignored", reason="invalid_branch", pr_number=event.pr_number
            )
            return None

        if event.review_id is not None:
            comment_id = webhook_comment_id(event.review_id)
            if self._state.is_processed(comment_id):
                log_event(LOGGER, "webhook_duplicate", comment_id=comment_id)
                return None
        else:
            comment_id = webhook_comment_id(f"pr-{event.pr_number}")

        task = RemediationTask(
            pr_number=event.pr_number,
            branch=event.branch,
            path="",
            line=0,
            comment_id=comment_id,
            comment_body=event.body,
            suggested_agent=suggest_agent(event.body),
        )
        self._enqueue(task)
        if event.review_id is not None:
            self._state.add_processed_comment(comment_id)
        self._state.increment_stat("tasks_queued")
        self._state.save()
        return task

    def get_queued_tasks(self) -> list[RemediationTask]:
        with self._queue_lock:
            return list(self._queue)

    def dequeue_task(self) -> RemediationTask | None:
        with self._queue_lock:
            if not self._queue:
                return None
            return self._queue.popleft()

    def clear_queue(self) -> None:
        with self._queue_lock:
            self._queue.clear()

    def record_task_result(self, outcome: TaskOutcome) -> None:
        self._state.increment_stat("tasks_completed" if outcome.succeeded else "tasks_failed")
        self._state.save()

    def _poll_once(self) -> None:
        pull_requests = self._github.list_open_prs()
        with ThreadPoolExecutor(max_workers=self._fetch_workers) as pool:
            comments_by_pr = list(
                pool.map(lambda pr: self._github.get_review_comments(pr.number), pull_requests)
            )

        queued = 0
        for pull_request, comments in zip(pull_requests, comments_by_pr):
            for comment in comments:
                if self._state.is_processed(comment.id):
                    continue
                if self._handle_new_comment(pull_request, comment):
                    queued += 1

        self._state.set_last_error(None)
        self._state.update_last_poll_time()
        self._state.save()
        log_event(
            LOGGER,
            "pr_monitor_poll_completed",
            pull_request_count=len(pull_requests),
            queued_count=queued,
        )

    def _handle_new_comment(self, pull_request: PullRequest, comment: ReviewComment) -> bool:
        if is_own_acknowledgment(comment.body):
            self._state.add_processed_comment(comment.id)
            return False

        if classify_comment(comment.body) == "not_actionable":
            self._state.increment_stat("comments_processed")
            self._state.add_processed_comment(comment.id)
            return False

        try:
            self._github.reply_to_comment(pull_request.number, comment.id, ACKNOWLEDGMENT)
        except RateLimitError:
            raise
        except Exception as exc:  # noqa: BLE001
            # Left unprocessed so the next poll tries this comment again.
            log_warning_event(
                LOGGER,
                "comment_acknowledgment_failed",
                pr_number=pull_request.number,
                comment_id=comment.id,
                error_type=type(exc).__name__,
            )
            return False
        self._state.increment_stat("comments_processed")
        task = RemediationTask(
            pr_number=pull_request.number,
            branch=pull_request.branch,
            path=comment.path,
            line=comment.line,
            comment_id=comment.id,
            comment_body=comment.body,
            suggested_agent=suggest_agent(comment.body),
        )
        self._enqueue(task)
        self._state.add_processed_comment(comment.id)
        self._state.increment_stat("tasks_queued")
        return True

    def _enqueue(self, task: RemediationTask) -> None:
        with self._queue_lock:
            if self._queue.maxlen is not None and len(self._queue) == self._queue.maxlen:
                evicted = self._queue[0]
                log_warning_event(
                    LOGGER,
                    "task_evicted",
                    pr_number=evicted.pr_number,
                    comment_id=evicted.comment_id,
                )
            self._queue.append(task)
        log_event(
            LOGGER,
            "task_queued",
            pr_number=task.pr_number,
            comment_id=task.comment_id,
            suggested_agent=task.suggested_agent,
        )
