"""Supervision of one blocking agent call.

The foreground awaits the agent's completion signal, which may never come if
the agent or its upstream API stalls. A watchdog task runs next to it: it
drains the session's progress events, logs a liveness line on every interval,
and once the configured timeout has passed it kills the agent's process group.
After a kill the foreground's wait normally fails once the agent exits. If it
has not finished within a short grace period the watchdog abandons it. Either
way the call is reported as a timeout, even if the wait happened to return
cleanly.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pibot.agent.base import AgentEvent, AgentSession, AgentTimeoutError, EventKind

if TYPE_CHECKING:
    from loguru import Logger

WATCHDOG_INTERVAL_SECONDS = 30.0
KILL_GRACE_SECONDS = 10.0


def _empty_counts() -> dict[EventKind, int]:
    return {kind: 0 for kind in EventKind}


@dataclass(slots=True)
class SupervisionState:
    label: str
    timeout: float | None
    started_at: float = field(default_factory=time.monotonic)
    last_event_at: float | None = None
    counts: dict[EventKind, int] = field(default_factory=_empty_counts)
    done: bool = False
    timed_out: bool = False
    killed_at: float | None = None
    abandoned: bool = False

    @property
    def deadline(self) -> float | None:
        if self.timeout is None:
            return None
        return self.started_at + self.timeout

    @property
    def total_events(self) -> int:
        return sum(self.counts.values())

    def record(self, event: AgentEvent) -> None:
        self.counts[event.kind] += 1
        self.last_event_at = event.received_at

    def idle_seconds(self, now: float) -> float:
        return now - (self.last_event_at if self.last_event_at is not None else self.started_at)

    def counts_summary(self) -> str:
        return " ".join(f"{kind}={count}" for kind, count in self.counts.items() if count)


def _normalize_timeout(timeout: float | None) -> float | None:
    if timeout is None or timeout <= 0:
        return None
    return float(timeout)


def _log_event(event: AgentEvent, state: SupervisionState, log: Logger) -> None:
    if event.kind is EventKind.TOOL_CALL_START:
        tool = event.payload.get("toolName") or event.payload.get("name") or "?"
        log.debug("{} tool call started: {}", state.label, tool)
    elif event.kind is EventKind.TOOL_CALL_END:
        tool = event.payload.get("toolName") or event.payload.get("name") or "?"
        log.debug("{} tool call finished: {}", state.label, tool)
    elif event.kind is EventKind.ERROR:
        log.warning("{} agent error event: {}", state.label, str(event.payload)[:200])


def _enforce_timeout(
    session: AgentSession, state: SupervisionState, log: Logger, now: float
) -> None:
    state.timed_out = True
    state.killed_at = now
    log.error(
        "{} exceeded timeout of {:.0f}s (elapsed={:.1f}s idle={:.1f}s); killing agent pid={}",
        state.label,
        state.timeout,
        now - state.started_at,
        state.idle_seconds(now),
        session.pid,
    )
    if not session.kill():
        log.warning("{} agent pid={} had already exited", state.label, session.pid)


def _log_liveness(state: SupervisionState, log: Logger, now: float) -> None:
    log.info(
        "{} still running elapsed={:.0f}s idle={:.0f}s events={} {}",
        state.label,
        now - state.started_at,
        state.idle_seconds(now),
        state.total_events,
        state.counts_summary(),
    )


async def _watchdog(
    session: AgentSession,
    state: SupervisionState,
    queue: asyncio.Queue[AgentEvent],
    stop: asyncio.Event,
    log: Logger,
    interval: float,
    waiter: asyncio.Future[None],
    kill_grace: float,
) -> None:
    next_tick = state.started_at + interval
    stop_waiter = asyncio.create_task(stop.wait())
    getter: asyncio.Task[AgentEvent] | None = None
    try:
        while not stop.is_set():
            now = time.monotonic()
            deadline = state.deadline
            if deadline is not None and not state.timed_out and now >= deadline:
                _enforce_timeout(session, state, log, now)
                continue
            if state.killed_at is not None and now >= state.killed_at + kill_grace:
                if not waiter.done():
                    log.error(
                        "{} agent did not finish {:.0f}s after kill; abandoning the wait",
                        state.label,
                        kill_grace,
                    )
                    state.abandoned = True
                    waiter.cancel()
                return
            if now >= next_tick:
                if not state.timed_out:
                    _log_liveness(state, log, now)
                else:
                    log.warning("{} waiting for killed agent to exit", state.label)
                next_tick = now + interval
                continue

            wake_at = next_tick
            if deadline is not None and not state.timed_out:
                wake_at = min(wake_at, deadline)
            if state.killed_at is not None:
                wake_at = min(wake_at, state.killed_at + kill_grace)
            if getter is None:
                getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait(
                {getter, stop_waiter},
                timeout=max(0.0, wake_at - now),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if getter in done:
                event = getter.result()
                getter = None
                state.record(event)
                _log_event(event, state, log)
    finally:
        for task in (getter, stop_waiter):
            if task is not None and not task.done():
                task.cancel()


def _drain(queue: asyncio.Queue[AgentEvent], state: SupervisionState) -> None:
    while True:
        try:
            state.record(queue.get_nowait())
        except asyncio.QueueEmpty:
            return


async def run_with_supervision(
    session: AgentSession,
    label: str,
    timeout: float | None,
    log: Logger,
    *,
    interval: float = WATCHDOG_INTERVAL_SECONDS,
    kill_grace: float = KILL_GRACE_SECONDS,
) -> SupervisionState:
    """Wait for ``session`` to finish its prompt under watchdog supervision.

    ``timeout`` of None or <= 0 supervises without a deadline: liveness is still
    logged but the agent is never killed. Raises ``AgentTimeoutError`` when the
    watchdog had to kill the agent, including when the agent ignores the kill
    for longer than ``kill_grace`` seconds. Otherwise re-raises whatever the
    wait raised.
    """
    state = SupervisionState(label=label, timeout=_normalize_timeout(timeout))
    queue = session.subscribe()
    stop = asyncio.Event()
    waiter = asyncio.ensure_future(session.wait_for_idle())
    watchdog = asyncio.create_task(
        _watchdog(session, state, queue, stop, log, interval, waiter, kill_grace),
        name=f"watchdog:{label}",
    )
    log.debug(
        "{} supervised wait started pid={} timeout={}",
        label,
        session.pid,
        f"{state.timeout:.0f}s" if state.timeout is not None else "none",
    )

    error: Exception | None = None
    try:
        await waiter
    except asyncio.CancelledError:
        if not state.abandoned:
            raise
    except Exception as exc:
        error = exc
    finally:
        if not waiter.done():
            waiter.cancel()
        state.done = True
        stop.set()
        await watchdog
        _drain(queue, state)
        session.unsubscribe(queue)

    elapsed = time.monotonic() - state.started_at
    if state.timed_out:
        raise AgentTimeoutError(
            f"{label} timed out after {elapsed:.1f}s (limit {state.timeout:.0f}s)",
            retriable=True,
        ) from error
    if error is not None:
        log.warning("{} failed after {:.1f}s: {}", label, elapsed, error)
        raise error

    log.info(
        "{} finished in {:.1f}s events={} {}",
        label,
        elapsed,
        state.total_events,
        state.counts_summary(),
    )
    return state
