from __future__ import annotations

from dataclasses import dataclass, field
import logging
import sys
import threading

from prwarden.agent_config import AgentConfigStore, default_project_path
from prwarden.agent_status import AgentStatusFile
from prwarden.config import AppConfig
from prwarden.executor import FixHook, RemediationExecutor
from prwarden.git_ops import GitWorkingCopy
from prwarden.github_gateway import GitHubGateway
from prwarden.models import RepoIdentity, TaskOutcome
from prwarden.observability import log_event, log_warning_event
from prwarden.pr_monitor import PRMonitorAgent
from prwarden.process_lock import working_copy_lock
from prwarden.quality_gates import QualityGateRunner
from prwarden.registry import AgentRegistry
from prwarden.state import DedupStateStore


LOGGER = logging.getLogger("prwarden.service_runner")


@dataclass(frozen=True)
class ServiceRunner:
    """Starts the configured agents and feeds queued tasks to the executor one by one."""

    config: AppConfig
    registry: AgentRegistry
    monitor: PRMonitorAgent
    executor: RemediationExecutor
    agent_config: AgentConfigStore
    stop_event: threading.Event = field(default_factory=threading.Event)

    def run(self, *, once: bool, all_agents: bool = False) -> None:
        if once:
            self.run_once()
            return

        started = self.start_agents(all_agents=all_agents)
        log_event(LOGGER, "service_started", agents=",".join(started) or "<none>")
        try:
            while not self.stop_event.is_set():
                if not self.drain_one():
                    self.stop_event.wait(self.config.runtime.idle_wait_seconds)
        finally:
            self.registry.stop_all()
            log_event(LOGGER, "service_stopped")

    def run_once(self) -> int:
        """Poll every registered agent once, then work through the whole queue."""
        for name in self.registry.list():
            agent = self.registry.get(name)
            if agent is None:
                continue
            agent.initialize()
            self.registry.poll_agent(name)
        return self.drain_queue()

    def start_agents(self, *, all_agents: bool) -> list[str]:
        started: list[str] = []
        for name in self.registry.list():
            agent_config = self.agent_config.get_agent_config(name)
            if not (all_agents or agent_config.enabled):
                log_event(LOGGER, "agent_skipped", agent_name=name, reason="disabled")
                continue
            self.registry.start_agent(name, agent_config.interval_seconds)
            started.append(name)
        return started

    def stop(self) -> None:
        self.stop_event.set()

    def drain_queue(self) -> int:
        handled = 0
        while not self.stop_event.is_set() and self.drain_one():
            handled += 1
        return handled

    def drain_one(self) -> bool:
        task = self.monitor.dequeue_task()
        if task is None:
            return False
        outcome = self.executor.execute_task(task)
        self.monitor.record_task_result(outcome)
        if outcome.escalated:
            self._record_escalation(outcome)
        return True

    def _record_escalation(self, outcome: TaskOutcome) -> None:
        message = (
            f"Escalation: PR #{outcome.task.pr_number} comment {outcome.task.comment_id} "
            f"ended with status {outcome.status} after retries"
        )
        self.monitor.state.set_last_error(message)
        self.monitor.state.save()
        log_warning_event(
            LOGGER,
            "escalation_recorded",
            pr_number=outcome.task.pr_number,
            comment_id=outcome.task.comment_id,
            status=outcome.status,
        )


def build_service_runner(
    config: AppConfig,
    *,
    apply_fix: FixHook | None = None,
    agent_config: AgentConfigStore | None = None,
) -> ServiceRunner:
    runtime = config.runtime
    identity = None
    if config.repo.owner is not None and config.repo.name is not None:
        identity = RepoIdentity(owner=config.repo.owner, name=config.repo.name)
    github = GitHubGateway(
        repo_path=runtime.project_dir,
        remote=config.repo.remote,
        configured_identity=identity,
    )
    monitor = PRMonitorAgent(
        DedupStateStore(runtime.state_file),
        github,
        queue_capacity=runtime.queue_capacity,
        fetch_workers=runtime.comment_fetch_workers,
        webhook_secret=config.repo.webhook_secret,
    )
    executor = RemediationExecutor(
        GitWorkingCopy(runtime.project_dir, remote=config.repo.remote),
        QualityGateRunner(runtime.project_dir, config.quality_gates),
        config.executor,
        apply_fix=apply_fix,
    )
    registry = AgentRegistry(status_file=AgentStatusFile(runtime.agent_status_file))
    registry.register(monitor)
    return ServiceRunner(
        config=config,
        registry=registry,
        monitor=monitor,
        executor=executor,
        agent_config=agent_config
        or AgentConfigStore(project_path=default_project_path(runtime.project_dir)),
    )


def run_service(
    *,
    config: AppConfig,
    once: bool,
    all_agents: bool = False,
    runner: ServiceRunner | None = None,
) -> None:
    service = runner or build_service_runner(config)
    with working_copy_lock(state_dir=config.runtime.state_dir, command=" ".join(sys.argv)):
        service.run(once=once, all_agents=all_agents)
