from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

EVENT_QUEUE_MAXSIZE = 256


class AgentError(RuntimeError):
    """Raised when an agent call fails."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.retriable = retriable


class AgentTimeoutError(AgentError):
    """Raised when a supervised call exceeds its configured timeout."""


class AgentProcessError(AgentError):
    """Raised when the agent process cannot be started, talked to, or exits."""


class AgentResponseError(AgentError):
    """Raised when the agent itself reports an error for the current prompt."""


class EventKind(StrEnum):
    START = "start"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_END = "tool_call_end"
    COMPLETION = "completion"
    ERROR = "error"
    OTHER = "other"


_EVENT_KINDS_BY_TYPE = {
    "agent_start": EventKind.START,
    "toolcall_start": EventKind.TOOL_CALL_START,
    "tool_execution_start": EventKind.TOOL_CALL_START,
    "toolcall_end": EventKind.TOOL_CALL_END,
    "tool_execution_end": EventKind.TOOL_CALL_END,
    "agent_end": EventKind.COMPLETION,
    "error": EventKind.ERROR,
}


def classify_event(payload: Any) -> EventKind:
    if not isinstance(payload, dict):
        return EventKind.OTHER
    event_type = payload.get("type")
    if not isinstance(event_type, str):
        return EventKind.OTHER
    return _EVENT_KINDS_BY_TYPE.get(event_type, EventKind.OTHER)


@dataclass(frozen=True, slots=True)
class AgentEvent:
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)
    received_at: float = field(default_factory=time.monotonic)

    @classmethod
    def from_payload(cls, payload: Any) -> AgentEvent:
        if isinstance(payload, dict):
            return cls(kind=classify_event(payload), payload=payload)
        return cls(kind=EventKind.OTHER, payload={"raw": payload})


class AgentSession(ABC):
    """One conversation with the agent, backed by one live process.

    Progress events are fanned out to every subscribed queue. Queues are
    bounded; an event that does not fit is dropped and counted in
    ``dropped_events`` rather than blocking the reader.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[AgentEvent]] = []
        self.dropped_events = 0

    def subscribe(self, maxsize: int = EVENT_QUEUE_MAXSIZE) -> asyncio.Queue[AgentEvent]:
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[AgentEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: AgentEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped_events += 1

    @property
    @abstractmethod
    def pid(self) -> int | None:
        """Process id of the backing agent process, if running."""

    @abstractmethod
    async def prompt(self, message: str) -> None:
        """Send a prompt; returns once the agent has accepted it."""

    @abstractmethod
    async def wait_for_idle(self) -> None:
        """Block until the agent finishes the current prompt, raising on failure."""

    @abstractmethod
    def last_assistant_text(self) -> str | None:
        """Final assistant text of the most recent prompt."""

    @abstractmethod
    def kill(self) -> bool:
        """Forcibly terminate the agent process group.

        Returns False when the process had already exited.
        """

    @abstractmethod
    async def dispose(self) -> None:
        """Stop the agent process and wait until it has exited."""
