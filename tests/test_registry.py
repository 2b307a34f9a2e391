from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import threading
import time

import pytest

from prwarden.agent_status import AgentStatusFile
from prwarden.background_agent import AgentHealthEvent, AgentMetadata, AgentStatus, BackgroundAgent
from prwarden.registry import ERROR_THRESHOLD, AgentRegistry, AgentRegistryError


class FakeAgent(BackgroundAgent):
    def __init__(self, name: str = "fake") -> None:
        self.metadata = AgentMetadata(name=name, description="Fake agent", version="0.0.1")
        self.calls: list[str] = []
        self.fail_with: Exception | None = None
        self.polled = threading.Event()
        self.poll_count = 0

    def initialize(self) -> None:
        self.calls.append("initialize")

    def start(self) -> None:
        self.calls.append("start")

    def stop(self) -> None:
        self.calls.append("stop")

    def poll(self) -> None:
        self.poll_count += 1
        self.polled.set()
        if self.fail_with is not None:
            raise self.fail_with

    def get_status(self) -> AgentStatus:
        return AgentStatus(is_running=True, last_poll_time=None, error_count=0, last_error=None)


def _registry(*agents: FakeAgent) -> AgentRegistry:
    registry = AgentRegistry(clock=lambda: datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    for agent in agents:
        registry.register(agent)
    return registry


def test_register_and_lookup() -> None:
    agent = FakeAgent("pr-monitor")
    registry = _registry(agent)

    assert registry.get("pr-monitor") is agent
    assert registry.get("missing") is None
    assert registry.has("pr-monitor")
    assert registry.list() == ["pr-monitor"]


def test_duplicate_registration_fails() -> None:
    registry = _registry(FakeAgent("pr-monitor"))

    with pytest.raises(AgentRegistryError, match="already registered"):
        registry.register(FakeAgent("pr-monitor"))


def test_register_rejects_non_agents() -> None:
    with pytest.raises(AgentRegistryError):
        AgentRegistry().register(object())  # type: ignore[arg-type]


def test_unknown_agent_operations_fail() -> None:
    registry = AgentRegistry()

    with pytest.raises(AgentRegistryError, match="not found"):
        registry.start_agent("ghost", 1)
    with pytest.raises(AgentRegistryError):
        registry.stop_agent("ghost")
    with pytest.raises(AgentRegistryError):
        registry.poll_agent("ghost")
    assert registry.get_agent_status("ghost") is None


def test_status_before_start_is_idle() -> None:
    registry = _registry(FakeAgent())

    assert registry.get_agent_status("fake") == AgentStatus(
        is_running=False, last_poll_time=None, error_count=0, last_error=None
    )
    assert registry.is_healthy("fake")


def test_unhealthy_emitted_once_at_threshold_then_healthy_on_recovery() -> None:
    agent = FakeAgent()
    registry = _registry(agent)
    events: list[AgentHealthEvent] = []
    registry.add_listener(events.append)

    agent.fail_with = RuntimeError("GitHub unreachable")
    for _ in range(ERROR_THRESHOLD + 2):
        assert registry.poll_agent("fake") is True

    assert events == [
        AgentHealthEvent(
            kind="unhealthy",
            agent_name="fake",
            error_count=ERROR_THRESHOLD,
            last_error="GitHub unreachable",
        )
    ]
    status = registry.get_agent_status("fake")
    assert status is not None
    assert status.error_count == ERROR_THRESHOLD + 2
    assert registry.is_healthy("fake") is False

    agent.fail_with = None
    registry.poll_agent("fake")

    assert events[-1] == AgentHealthEvent(
        kind="healthy", agent_name="fake", error_count=0, last_error=None
    )
    status = registry.get_agent_status("fake")
    assert status is not None
    assert status.error_count == 0
    assert status.last_error is None
    assert status.last_poll_time == "2026-03-01T12:00:00.000000Z"
    assert registry.is_healthy("fake")


def test_success_without_prior_failure_emits_nothing() -> None:
    registry = _registry(FakeAgent())
    events: list[AgentHealthEvent] = []
    registry.add_listener(events.append)

    registry.poll_agent("fake")
    registry.poll_agent("fake")

    assert events == []


def test_failing_listener_does_not_stop_others() -> None:
    agent = FakeAgent()
    registry = _registry(agent)
    seen: list[str] = []

    def broken(event: AgentHealthEvent) -> None:
        raise RuntimeError("listener bug")

    registry.add_listener(broken)
    registry.add_listener(lambda event: seen.append(event.kind))
    agent.fail_with = RuntimeError("boom")

    for _ in range(ERROR_THRESHOLD):
        registry.poll_agent("fake")

    assert seen == ["unhealthy"]


def test_removed_listener_is_not_called() -> None:
    agent = FakeAgent()
    registry = _registry(agent)
    seen: list[AgentHealthEvent] = []
    registry.add_listener(seen.append)
    registry.remove_listener(seen.append)
    registry.remove_listener(seen.append)
    agent.fail_with = RuntimeError("boom")

    for _ in range(ERROR_THRESHOLD):
        registry.poll_agent("fake")

    assert seen == []


def test_overlapping_poll_is_skipped() -> None:
    release = threading.Event()
    entered = threading.Event()

    class SlowAgent(FakeAgent):
        def poll(self) -> None:
            entered.set()
            release.wait(timeout=5)
            super().poll()

    agent = SlowAgent()
    registry = _registry(agent)
    results: list[bool] = []
    worker = threading.Thread(target=lambda: results.append(registry.poll_agent("fake")))
    worker.start()
    assert entered.wait(timeout=5)

    assert registry.poll_agent("fake") is False

    release.set()
    worker.join(timeout=5)
    assert results == [True]
    assert agent.poll_count == 1


def test_start_polls_on_interval_and_stop_joins() -> None:
    agent = FakeAgent()
    registry = _registry(agent)

    registry.start_agent("fake", 0.01)
    assert agent.polled.wait(timeout=5)
    status = registry.get_agent_status("fake")
    assert status is not None and status.is_running is True

    registry.stop_agent("fake")
    polls_after_stop = agent.poll_count
    time.sleep(0.05)

    assert agent.poll_count == polls_after_stop
    assert agent.calls == ["initialize", "start", "stop"]
    status = registry.get_agent_status("fake")
    assert status is not None and status.is_running is False


def test_start_twice_fails_and_restart_works() -> None:
    agent = FakeAgent()
    registry = _registry(agent)
    registry.start_agent("fake", 60)
    try:
        with pytest.raises(AgentRegistryError, match="already running"):
            registry.start_agent("fake", 60)

        registry.restart_agent("fake", 30)

        status = registry.get_agent_status("fake")
        assert status is not None and status.is_running is True
        assert agent.calls == ["initialize", "start", "stop", "initialize", "start"]
    finally:
        registry.stop_all()


def test_start_rejects_non_positive_interval() -> None:
    registry = _registry(FakeAgent())

    with pytest.raises(ValueError):
        registry.start_agent("fake", 0)


def test_start_all_and_stop_all() -> None:
    first = FakeAgent("first")
    second = FakeAgent("second")
    registry = _registry(first, second)

    registry.start_all(60)
    assert all(registry.get_agent_status(name).is_running for name in ("first", "second"))  # type: ignore[union-attr]

    registry.stop_all()

    assert first.calls[-1] == "stop"
    assert second.calls[-1] == "stop"
    assert not any(registry.get_agent_status(name).is_running for name in ("first", "second"))  # type: ignore[union-attr]


def test_stop_all_skips_agents_never_started() -> None:
    agent = FakeAgent()
    registry = _registry(agent)

    registry.stop_all()

    assert agent.calls == []


def test_status_file_tracks_start_poll_failures_and_stop(tmp_path: Path) -> None:
    agent = FakeAgent()
    status_file = AgentStatusFile(tmp_path / "agent-status.json")
    registry = AgentRegistry(
        clock=lambda: datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc), status_file=status_file
    )
    registry.register(agent)

    registry.start_agent("fake", 60)
    try:
        assert status_file.read()["fake"].is_running is True

        registry.poll_agent("fake")
        agent.fail_with = RuntimeError("GitHub unreachable")
        registry.poll_agent("fake")
        registry.poll_agent("fake")

        assert status_file.read()["fake"] == AgentStatus(
            is_running=True,
            last_poll_time="2026-03-01T12:00:00.000000Z",
            error_count=2,
            last_error="GitHub unreachable",
        )
    finally:
        registry.stop_all()

    assert status_file.read()["fake"].is_running is False
