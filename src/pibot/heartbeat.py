from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from pibot.agent.session_cache import SessionCache
from pibot.execution import bind_execution
from pibot.prompts import heartbeat_prompt, trim_for_log
from pibot.runtime_state import TaskArbiter, TaskKind

if TYPE_CHECKING:
    from loguru import Logger

TickOutcome = Literal["disabled", "not_due", "deferred", "ok", "error"]
TriggerResult = Literal["started", "busy", "unavailable", "failed"]
HeartbeatNotifier = Callable[[str], Awaitable[None]]


class HeartbeatScheduler:
    """Runs the periodic maintenance prompt.

    The heartbeat never waits for the agent: when another task holds the
    arbiter the run is deferred by a full interval. After a run, successful or
    not, the next one is due one interval after it finished. An interval of
    zero or less disables the schedule; manual triggers still work.
    """

    def __init__(
        self,
        arbiter: TaskArbiter,
        cache: SessionCache,
        *,
        agent_dir: Path,
        interval_seconds: float,
        timeout_seconds: float | None,
        notify: HeartbeatNotifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.arbiter = arbiter
        self.cache = cache
        self.agent_dir = agent_dir
        self.interval_seconds = float(interval_seconds)
        self.timeout_seconds = timeout_seconds
        self.notify = notify
        self._clock = clock
        self._stopped = False
        self._background: set[asyncio.Task[TickOutcome]] = set()
        self._next_due: float | None = None
        if self.enabled:
            self._schedule_after(self._clock())
        else:
            self.arbiter.set_next_heartbeat(None)

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0

    @property
    def next_due(self) -> float | None:
        return self._next_due

    def _schedule_after(self, reference: float) -> None:
        if not self.enabled:
            return
        self._next_due = reference + self.interval_seconds
        self.arbiter.set_next_heartbeat(self._next_due)

    def is_due(self, now: float | None = None) -> bool:
        if self._next_due is None:
            return False
        now = self._clock() if now is None else now
        return now >= self._next_due

    async def run_once(self, log: Logger) -> bool:
        """Send one heartbeat prompt. The caller is responsible for the arbiter."""
        self.arbiter.record_heartbeat_started()
        prompt = heartbeat_prompt(self.agent_dir, self._clock())
        try:
            text = await self.cache.invoke(prompt, self.timeout_seconds, log, label="heartbeat")
        except Exception as exc:
            self.arbiter.record_heartbeat_error(exc)
            log.error("heartbeat failed: {}", exc)
            return False

        self.arbiter.record_heartbeat_success()
        log.info("heartbeat response: {}", trim_for_log(text))
        if self.notify is not None:
            try:
                await self.notify(text)
            except Exception as exc:
                log.warning("failed delivering heartbeat response: {}", exc)
        return True

    async def _run_holding_arbiter(self, log: Logger) -> TickOutcome:
        try:
            ok = await self.run_once(log)
        finally:
            self._schedule_after(self._clock())
            self.arbiter.finish(TaskKind.HEARTBEAT)
        return "ok" if ok else "error"

    async def tick(self, now: float | None = None) -> TickOutcome:
        if not self.enabled:
            return "disabled"
        now = self._clock() if now is None else now
        if not self.is_due(now):
            return "not_due"

        log = bind_execution(op="heartbeat")
        if not self.arbiter.try_begin(TaskKind.HEARTBEAT):
            self.arbiter.record_heartbeat_deferred()
            self._schedule_after(now)
            log.info(
                "heartbeat deferred; agent busy with {}",
                self.arbiter.snapshot().active_task,
            )
            return "deferred"

        log.info("triggering heartbeat")
        return await self._run_holding_arbiter(log)

    async def run_forever(self, stop: asyncio.Event) -> None:
        log = bind_execution(op="heartbeat")
        if not self.enabled:
            log.info("heartbeat disabled (interval={})", self.interval_seconds)
            await stop.wait()
            return

        log.info("heartbeat scheduler started interval={:.0f}s", self.interval_seconds)
        while not stop.is_set():
            delay = 0.0
            if self._next_due is not None:
                delay = max(0.0, self._next_due - self._clock())
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except TimeoutError:
                pass
            if stop.is_set():
                break
            try:
                await self.tick()
            except Exception as exc:
                log.exception("heartbeat tick failed: {}", exc)
                self._schedule_after(self._clock())
        self._stopped = True

    def trigger_now(self, log: Logger | None = None) -> TriggerResult:
        """Start a heartbeat in the background right away, if the agent is free."""
        log = log or bind_execution(op="heartbeat_trigger")
        if self._stopped:
            return "unavailable"
        if not self.arbiter.try_begin(TaskKind.HEARTBEAT):
            return "busy"
        try:
            task = asyncio.get_running_loop().create_task(self._run_holding_arbiter(log))
        except RuntimeError as exc:
            self.arbiter.finish(TaskKind.HEARTBEAT)
            log.error("failed starting manual heartbeat: {}", exc)
            return "failed"
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        log.info("manual heartbeat started")
        return "started"

    def stop(self) -> None:
        self._stopped = True

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
