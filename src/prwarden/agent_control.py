from __future__ import annotations

from dataclasses import dataclass
import logging

from prwarden.agent_config import (
    DEFAULT_INTERVAL_SECONDS,
    AgentConfig,
    AgentConfigStore,
    parse_interval,
)
from prwarden.agent_status import AgentStatusFile
from prwarden.background_agent import AgentStatus, BackgroundAgent
from prwarden.observability import log_event
from prwarden.registry import AgentRegistry, AgentRegistryError


LOGGER = logging.getLogger("prwarden.agent_control")


@dataclass(frozen=True)
class AgentListEntry:
    name: str
    description: str
    enabled: bool
    running: bool
    last_poll_time: str | None


@dataclass(frozen=True)
class NamedAgentStatus:
    name: str
    status: AgentStatus


class AgentCLI:
    """Operator commands over a registry and the agent config files.

    When ``status_file`` is given, running state and error counts come from the
    snapshot the service publishes rather than from this process's registry.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        config_store: AgentConfigStore,
        *,
        status_file: AgentStatusFile | None = None,
    ) -> None:
        self.registry = registry
        self.config_store = config_store
        self.status_file = status_file

    def list(self) -> list[AgentListEntry]:
        published = self._published()
        entries: list[AgentListEntry] = []
        for name in self.registry.list():
            agent = self.registry.get(name)
            if agent is None:
                continue
            status = published.get(name) or agent.get_status()
            entries.append(
                AgentListEntry(
                    name=name,
                    description=agent.metadata.description,
                    enabled=self.config_store.get_agent_config(name).enabled,
                    running=status.is_running,
                    last_poll_time=status.last_poll_time,
                )
            )
        return entries

    def enable(self, name: str) -> None:
        self._require(name)
        self.config_store.save_agent_config(name, enabled=True)
        if self._is_running(name):
            log_event(LOGGER, "agent_enable_noop", agent_name=name, reason="already_running")
            return
        self.registry.start_agent(name, DEFAULT_INTERVAL_SECONDS)

    def disable(self, name: str) -> None:
        self._require(name)
        self.config_store.save_agent_config(name, enabled=False)
        self.registry.stop_agent(name)

    def config(self, name: str, interval: str | None = None) -> AgentConfig:
        """Return the merged config, first storing a new ``interval`` such as ``"5m"``."""
        self._require(name)
        if interval is None:
            return self.config_store.get_agent_config(name)
        return self.config_store.save_agent_config(name, interval_seconds=parse_interval(interval))

    def status(self, name: str) -> AgentStatus:
        agent = self._require(name)
        return self._published().get(name) or agent.get_status()

    def status_all(self) -> list[NamedAgentStatus]:
        published = self._published()
        statuses: list[NamedAgentStatus] = []
        for name in self.registry.list():
            agent = self.registry.get(name)
            if agent is None:
                continue
            status = published.get(name) or agent.get_status()
            statuses.append(NamedAgentStatus(name=name, status=status))
        return statuses

    def restart(self, name: str) -> None:
        self._require(name)
        interval = self.config_store.get_agent_config(name).interval_seconds
        self.registry.restart_agent(name, interval or DEFAULT_INTERVAL_SECONDS)

    def _published(self) -> dict[str, AgentStatus]:
        if self.status_file is None:
            return {}
        return self.status_file.read()

    def _require(self, name: str) -> BackgroundAgent:
        agent = self.registry.get(name)
        if agent is None:
            raise AgentRegistryError(f"Agent {name!r} not found")
        return agent

    def _is_running(self, name: str) -> bool:
        status = self.registry.get_agent_status(name)
        return status is not None and status.is_running
