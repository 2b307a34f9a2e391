from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import threading
from typing import Callable

from prwarden.agent_status import AgentStatusFile
from prwarden.background_agent import (
    AgentHealthEvent,
    AgentStatus,
    BackgroundAgent,
    is_background_agent,
)
from prwarden.observability import log_event, log_warning_event
from prwarden.state import format_timestamp, utc_now


LOGGER = logging.getLogger("prwarden.registry")
ERROR_THRESHOLD = 3

HealthListener = Callable[[AgentHealthEvent], None]


class AgentRegistryError(RuntimeError):
    """Unknown agent, duplicate registration, or a lifecycle call out of order."""


@dataclass
class AgentRuntime:
    """Supervision state for one started agent. Only the registry mutates it."""

    interval_seconds: float
    is_running: bool = False
    poll_handle: threading.Thread | None = None
    last_poll_time: str | None = None
    error_count: int = 0
    last_error: str | None = None
    stop_event: threading.Event = field(default_factory=threading.Event, repr=False)
    poll_gate: threading.Lock = field(default_factory=threading.Lock, repr=False)


class AgentRegistry:
    """Owns background agents and polls each one on its own daemon thread.

    Health is tracked per agent: the third consecutive poll failure emits an
    ``unhealthy`` event, and the first success after any failure emits
    ``healthy``. Polls of one agent never overlap; a tick that arrives while a
    poll is still running is skipped. With a ``status_file`` the current
    statuses are written out after every start, stop and poll.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utc_now,
        status_file: AgentStatusFile | None = None,
    ) -> None:
        self._clock = clock
        self.status_file = status_file
        self._lock = threading.RLock()
        self._agents: dict[str, BackgroundAgent] = {}
        self._runtimes: dict[str, AgentRuntime] = {}
        self._listeners: list[HealthListener] = []

    def register(self, agent: BackgroundAgent) -> None:
        if not is_background_agent(agent):
            raise AgentRegistryError(f"Not a background agent: {agent!r}")
        name = agent.metadata.name
        with self._lock:
            if name in self._agents:
                raise AgentRegistryError(f"Agent {name!r} is already registered")
            self._agents[name] = agent
        log_event(LOGGER, "agent_registered", agent_name=name)

    def get(self, name: str) -> BackgroundAgent | None:
        with self._lock:
            return self._agents.get(name)

    def list(self) -> list[str]:
        with self._lock:
            return list(self._agents)

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._agents

    def add_listener(self, listener: HealthListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: HealthListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def start_agent(self, name: str, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        agent = self._require(name)
        with self._lock:
            existing = self._runtimes.get(name)
            if existing is not None and existing.is_running:
                raise AgentRegistryError(f"Agent {name!r} is already running")

        agent.initialize()
        agent.start()

        with self._lock:
            runtime = self._runtimes.get(name)
            if runtime is None:
                runtime = AgentRuntime(interval_seconds=interval_seconds)
                self._runtimes[name] = runtime
            runtime.interval_seconds = interval_seconds
            runtime.stop_event = threading.Event()
            runtime.is_running = True
            runtime.poll_handle = threading.Thread(
                target=self._poll_loop,
                args=(name, runtime),
                name=f"agent-{name}",
                daemon=True,
            )
            runtime.poll_handle.start()
        log_event(LOGGER, "agent_started", agent_name=name, interval_seconds=interval_seconds)
        self._publish_status()

    def stop_agent(self, name: str) -> None:
        agent = self._require(name)
        with self._lock:
            runtime = self._runtimes.pop(name, None)
        if runtime is not None:
            runtime.is_running = False
            runtime.stop_event.set()
            handle = runtime.poll_handle
            if handle is not None and handle is not threading.current_thread():
                handle.join()
        agent.stop()
        log_event(LOGGER, "agent_stopped", agent_name=name)
        self._publish_status()

    def restart_agent(self, name: str, interval_seconds: float) -> None:
        self.stop_agent(name)
        self.start_agent(name, interval_seconds)

    def get_agent_status(self, name: str) -> AgentStatus | None:
        with self._lock:
            if name not in self._agents:
                return None
            runtime = self._runtimes.get(name)
            if runtime is None:
                return AgentStatus(
                    is_running=False, last_poll_time=None, error_count=0, last_error=None
                )
            return AgentStatus(
                is_running=runtime.is_running,
                last_poll_time=runtime.last_poll_time,
                error_count=runtime.error_count,
                last_error=runtime.last_error,
            )

    def start_all(self, interval_seconds: float) -> None:
        for name in self.list():
            self.start_agent(name, interval_seconds)

    def stop_all(self) -> None:
        for name in self.list():
            with self._lock:
                runtime = self._runtimes.get(name)
            if runtime is not None and runtime.is_running:
                self.stop_agent(name)

    def is_healthy(self, name: str) -> bool:
        with self._lock:
            runtime = self._runtimes.get(name)
            if runtime is None:
                return True
            return runtime.error_count < ERROR_THRESHOLD

    def poll_agent(self, name: str) -> bool:
        """Run one poll now. Returns False when a poll of this agent is already running."""
        agent = self._require(name)
        with self._lock:
            runtime = self._runtimes.get(name)
            if runtime is None:
                runtime = AgentRuntime(interval_seconds=0)
                self._runtimes[name] = runtime
        return self._guarded_poll(name, agent, runtime)

    def _guarded_poll(self, name: str, agent: BackgroundAgent, runtime: AgentRuntime) -> bool:
        if not runtime.poll_gate.acquire(blocking=False):
            log_event(LOGGER, "agent_poll_skipped", agent_name=name, reason="poll_in_flight")
            return False
        try:
            self._run_poll(name, agent, runtime)
        finally:
            runtime.poll_gate.release()
        self._publish_status()
        return True

    def _run_poll(self, name: str, agent: BackgroundAgent, runtime: AgentRuntime) -> None:
        event: AgentHealthEvent | None = None
        try:
            agent.poll()
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                runtime.error_count += 1
                runtime.last_error = str(exc) or type(exc).__name__
                error_count = runtime.error_count
                if error_count == ERROR_THRESHOLD:
                    event = AgentHealthEvent(
                        kind="unhealthy",
                        agent_name=name,
                        error_count=error_count,
                        last_error=runtime.last_error,
                    )
            log_event(
                LOGGER,
                "agent_poll_failed",
                agent_name=name,
                error_type=type(exc).__name__,
                error_count=error_count,
            )
        else:
            with self._lock:
                runtime.last_poll_time = format_timestamp(self._clock())
                if runtime.error_count > 0:
                    runtime.error_count = 0
                    runtime.last_error = None
                    event = AgentHealthEvent(
                        kind="healthy", agent_name=name, error_count=0, last_error=None
                    )
        if event is not None:
            self._emit(event)

    def _poll_loop(self, name: str, runtime: AgentRuntime) -> None:
        agent = self._require(name)
        while not runtime.stop_event.wait(runtime.interval_seconds):
            self._guarded_poll(name, agent, runtime)

    def _emit(self, event: AgentHealthEvent) -> None:
        if event.kind == "unhealthy":
            log_warning_event(
                LOGGER,
                "agent_unhealthy",
                agent_name=event.agent_name,
                error_count=event.error_count,
                last_error=event.last_error,
            )
        else:
            log_event(LOGGER, "agent_healthy", agent_name=event.agent_name)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "health_listener_failed",
                    agent_name=event.agent_name,
                    error_type=type(exc).__name__,
                )

    def _publish_status(self) -> None:
        if self.status_file is None:
            return
        statuses: dict[str, AgentStatus] = {}
        for name in self.list():
            status = self.get_agent_status(name)
            if status is not None:
                statuses[name] = status
        try:
            self.status_file.write(statuses)
        except OSError as exc:
            log_warning_event(
                LOGGER,
                "agent_status_write_failed",
                path=str(self.status_file.path),
                error_type=type(exc).__name__,
            )

    def _require(self, name: str) -> BackgroundAgent:
        agent = self.get(name)
        if agent is None:
            raise AgentRegistryError(f"Agent {name!r} not found")
        return agent
