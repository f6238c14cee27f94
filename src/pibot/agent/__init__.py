from pibot.agent.base import (
    AgentError,
    AgentEvent,
    AgentProcessError,
    AgentResponseError,
    AgentSession,
    AgentTimeoutError,
    EventKind,
)
from pibot.agent.pi import PiSession, PiSessionFactory
from pibot.agent.session_cache import SessionCache, SessionStatus
from pibot.agent.supervision import run_with_supervision

__all__ = [
    "AgentError",
    "AgentEvent",
    "AgentProcessError",
    "AgentResponseError",
    "AgentSession",
    "AgentTimeoutError",
    "EventKind",
    "PiSession",
    "PiSessionFactory",
    "SessionCache",
    "SessionStatus",
    "run_with_supervision",
]
