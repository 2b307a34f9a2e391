from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal


HealthEventKind = Literal["healthy", "unhealthy"]
_AGENT_MEMBERS: tuple[str, ...] = ("initialize", "start", "stop", "poll", "get_status")


@dataclass(frozen=True)
class AgentMetadata:
    name: str
    description: str
    version: str


@dataclass(frozen=True)
class AgentStatus:
    is_running: bool
    last_poll_time: str | None
    error_count: int
    last_error: str | None


@dataclass(frozen=True)
class AgentHealthEvent:
    kind: HealthEventKind
    agent_name: str
    error_count: int
    last_error: str | None


class BackgroundAgent(ABC):
    """Lifecycle contract every supervised agent implements.

    The registry calls ``initialize`` then ``start`` once, ``poll`` on its own
    timer, and ``stop`` on shutdown. ``poll`` should raise on failure so the
    registry can count it; it must not loop or sleep.
    """

    metadata: AgentMetadata

    @abstractmethod
    def initialize(self) -> None:
        """Load persisted state and prepare collaborators."""

    @abstractmethod
    def start(self) -> None:
        """Mark the agent running. Scheduling belongs to the registry."""

    @abstractmethod
    def stop(self) -> None:
        """Release resources and persist state."""

    @abstractmethod
    def poll(self) -> None:
        """Do one unit of work."""

    @abstractmethod
    def get_status(self) -> AgentStatus:
        """Report the agent's own view of its health."""


def is_background_agent(candidate: object) -> bool:
    if isinstance(candidate, BackgroundAgent):
        return True
    metadata = getattr(candidate, "metadata", None)
    if not isinstance(metadata, AgentMetadata):
        return False
    return all(callable(getattr(candidate, member, None)) for member in _AGENT_MEMBERS)
