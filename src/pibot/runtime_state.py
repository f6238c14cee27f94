from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum

MAX_ERROR_TEXT_LEN = 160
MAX_PREVIEW_TEXT_LEN = 280


class TaskKind(StrEnum):
    NONE = "none"
    CHAT_REPLY = "chat_reply"
    HEARTBEAT = "heartbeat"


def _truncate_error(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        text = str(error) or type(error).__name__
    else:
        text = error
    return text[:MAX_ERROR_TEXT_LEN]


@dataclass(frozen=True, slots=True)
class ArbiterState:
    """Point-in-time copy of the runtime state shared by all tasks."""

    captured_at: float = 0.0
    started_at: float = 0.0
    next_heartbeat_at: float | None = None

    busy: bool = False
    active_task: TaskKind = TaskKind.NONE
    active_task_started_at: float = 0.0

    last_poll_at: float = 0.0
    last_poll_ok: bool = True
    poll_error_count: int = 0
    last_poll_error: str = ""

    message_count: int = 0
    busy_reject_count: int = 0
    generation_error_count: int = 0
    send_error_count: int = 0
    last_chat_error: str = ""

    heartbeat_run_count: int = 0
    heartbeat_error_count: int = 0
    heartbeat_deferred_count: int = 0
    last_heartbeat_started_at: float = 0.0
    last_heartbeat_finished_at: float = 0.0
    last_heartbeat_ok: bool = True
    last_heartbeat_error: str = ""

    web_chat_count: int = 0
    last_web_chat_at: float = 0.0
    last_web_chat_duration_ms: int = 0
    last_web_chat_ok: bool = True
    last_web_prompt: str = ""
    last_web_response: str = ""
    last_web_error: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "captured_at": self.captured_at,
            "started_at": self.started_at,
            "uptime_seconds": max(0, int(self.captured_at - self.started_at)),
            "next_heartbeat_at": self.next_heartbeat_at,
            "busy": self.busy,
            "active_task": str(self.active_task),
            "active_task_started_at": self.active_task_started_at or None,
            "last_poll_at": self.last_poll_at or None,
            "last_poll_ok": self.last_poll_ok,
            "poll_error_count": self.poll_error_count,
            "last_poll_error": self.last_poll_error,
            "message_count": self.message_count,
            "busy_reject_count": self.busy_reject_count,
            "generation_error_count": self.generation_error_count,
            "send_error_count": self.send_error_count,
            "last_chat_error": self.last_chat_error,
            "heartbeat_run_count": self.heartbeat_run_count,
            "heartbeat_error_count": self.heartbeat_error_count,
            "heartbeat_deferred_count": self.heartbeat_deferred_count,
            "last_heartbeat_started_at": self.last_heartbeat_started_at or None,
            "last_heartbeat_finished_at": self.last_heartbeat_finished_at or None,
            "last_heartbeat_ok": self.last_heartbeat_ok,
            "last_heartbeat_error": self.last_heartbeat_error,
            "web_chat_count": self.web_chat_count,
            "last_web_chat_at": self.last_web_chat_at or None,
            "last_web_chat_duration_ms": self.last_web_chat_duration_ms,
            "last_web_chat_ok": self.last_web_chat_ok,
            "last_web_prompt": self.last_web_prompt,
            "last_web_response": self.last_web_response,
            "last_web_error": self.last_web_error,
        }


class TaskArbiter:
    """Single-flight admission gate over agent tasks plus the runtime counters.

    At most one task (chat reply or heartbeat) is active at a time. Callers
    that fail ``try_begin`` handle the rejection themselves; nothing here
    queues or retries. All mutation happens under one lock and readers get a
    frozen snapshot, so a reader never observes a half-applied update.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._state = ArbiterState(started_at=clock())

    def _update(self, **changes: object) -> None:
        self._state = replace(self._state, **changes)

    def try_begin(self, kind: TaskKind) -> bool:
        if kind is TaskKind.NONE:
            raise ValueError("cannot begin a task of kind 'none'")
        with self._lock:
            if self._state.busy:
                return False
            self._update(busy=True, active_task=kind, active_task_started_at=self._clock())
            return True

    def finish(self, kind: TaskKind) -> None:
        with self._lock:
            if not self._state.busy or self._state.active_task is not kind:
                return
            self._update(busy=False, active_task=TaskKind.NONE, active_task_started_at=0.0)

    def snapshot(self) -> ArbiterState:
        with self._lock:
            return replace(self._state, captured_at=self._clock())

    def set_next_heartbeat(self, next_heartbeat_at: float | None) -> None:
        with self._lock:
            self._update(next_heartbeat_at=next_heartbeat_at)

    def record_poll_success(self) -> None:
        with self._lock:
            self._update(last_poll_at=self._clock(), last_poll_ok=True, last_poll_error="")

    def record_poll_error(self, error: BaseException | str) -> None:
        with self._lock:
            self._update(
                last_poll_at=self._clock(),
                last_poll_ok=False,
                poll_error_count=self._state.poll_error_count + 1,
                last_poll_error=_truncate_error(error),
            )

    def record_message(self) -> None:
        with self._lock:
            self._update(message_count=self._state.message_count + 1)

    def record_busy_reject(self) -> None:
        with self._lock:
            self._update(busy_reject_count=self._state.busy_reject_count + 1)

    def record_generation_error(self, error: BaseException | str) -> None:
        with self._lock:
            self._update(
                generation_error_count=self._state.generation_error_count + 1,
                last_chat_error=_truncate_error(error),
            )

    def record_send_error(self, error: BaseException | str) -> None:
        with self._lock:
            self._update(
                send_error_count=self._state.send_error_count + 1,
                last_chat_error=_truncate_error(error),
            )

    def clear_chat_error(self) -> None:
        with self._lock:
            self._update(last_chat_error="")

    def record_heartbeat_started(self) -> None:
        with self._lock:
            self._update(
                heartbeat_run_count=self._state.heartbeat_run_count + 1,
                last_heartbeat_started_at=self._clock(),
            )

    def record_heartbeat_success(self) -> None:
        with self._lock:
            self._update(
                last_heartbeat_finished_at=self._clock(),
                last_heartbeat_ok=True,
                last_heartbeat_error="",
            )

    def record_heartbeat_error(self, error: BaseException | str) -> None:
        with self._lock:
            self._update(
                last_heartbeat_finished_at=self._clock(),
                last_heartbeat_ok=False,
                heartbeat_error_count=self._state.heartbeat_error_count + 1,
                last_heartbeat_error=_truncate_error(error),
            )

    def record_heartbeat_deferred(self) -> None:
        with self._lock:
            self._update(heartbeat_deferred_count=self._state.heartbeat_deferred_count + 1)

    def record_web_chat_success(self, prompt: str, response: str, duration_ms: int) -> None:
        with self._lock:
            self._update(
                web_chat_count=self._state.web_chat_count + 1,
                last_web_chat_at=self._clock(),
                last_web_chat_duration_ms=duration_ms,
                last_web_chat_ok=True,
                last_web_prompt=prompt[:MAX_PREVIEW_TEXT_LEN],
                last_web_response=response[:MAX_PREVIEW_TEXT_LEN],
                last_web_error="",
            )

    def record_web_chat_error(
        self, prompt: str, error: BaseException | str, duration_ms: int
    ) -> None:
        with self._lock:
            self._update(
                web_chat_count=self._state.web_chat_count + 1,
                last_web_chat_at=self._clock(),
                last_web_chat_duration_ms=duration_ms,
                last_web_chat_ok=False,
                last_web_prompt=prompt[:MAX_PREVIEW_TEXT_LEN],
                last_web_response="",
                last_web_error=_truncate_error(error),
            )
