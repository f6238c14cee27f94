from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from pibot.agent.base import AgentSession
from pibot.agent.supervision import WATCHDOG_INTERVAL_SECONDS, run_with_supervision

if TYPE_CHECKING:
    from loguru import Logger

SessionFactory = Callable[[], Awaitable[AgentSession]]

NO_RESPONSE_TEXT = "I could not generate a response."


@dataclass(frozen=True, slots=True)
class SessionStatus:
    active: bool
    reuse_enabled: bool
    ttl_seconds: float
    created_at: float | None = None
    expires_at: float | None = None
    ttl_remaining: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "active": self.active,
            "reuse_enabled": self.reuse_enabled,
            "ttl_seconds": self.ttl_seconds,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "ttl_remaining": self.ttl_remaining,
        }


class SessionCache:
    """Owns the one shared agent session and decides when to reuse or rotate it.

    With ``ttl_seconds > 0`` a session is reused until it is ``ttl_seconds``
    old and then replaced. With ``ttl_seconds <= 0`` every call gets a private
    session that is disposed when the call returns. A session whose call failed
    in any way is discarded instead of being reused.
    """

    def __init__(
        self,
        factory: SessionFactory,
        *,
        ttl_seconds: float,
        watchdog_interval: float = WATCHDOG_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._factory = factory
        self.ttl_seconds = float(ttl_seconds)
        self.watchdog_interval = watchdog_interval
        self._clock = clock
        self._lock = asyncio.Lock()
        self._shared: AgentSession | None = None
        self._created_at: float | None = None

    @property
    def reuse_enabled(self) -> bool:
        return self.ttl_seconds > 0

    async def _dispose(self, session: AgentSession, log: Logger) -> None:
        try:
            await session.dispose()
        except Exception as exc:
            log.warning("failed disposing agent session pid={}: {}", session.pid, exc)

    async def _drop_shared(self, log: Logger) -> None:
        session = self._shared
        self._shared = None
        self._created_at = None
        if session is not None:
            await self._dispose(session, log)

    async def _acquire_shared(self, log: Logger) -> AgentSession:
        # Caller holds self._lock.
        now = self._clock()
        if self._shared is not None and self._created_at is not None and self.reuse_enabled:
            age = now - self._created_at
            if age < self.ttl_seconds:
                log.debug("reusing agent session pid={} age={:.0f}s", self._shared.pid, age)
                return self._shared
            log.info(
                "rotating agent session pid={} age={:.0f}s ttl={:.0f}s",
                self._shared.pid,
                age,
                self.ttl_seconds,
            )
        await self._drop_shared(log)

        session = await self._factory()
        self._shared = session
        self._created_at = now
        log.info("created agent session pid={}", session.pid)
        return session

    async def invoke(
        self,
        prompt: str,
        timeout: float | None,
        log: Logger | None = None,
        *,
        label: str = "agent call",
    ) -> str:
        log = log or logger
        async with self._lock:
            shared = self.reuse_enabled
            if shared:
                session = await self._acquire_shared(log)
            else:
                session = await self._factory()
                log.debug("created private agent session pid={}", session.pid)

            try:
                await session.prompt(prompt)
                await run_with_supervision(
                    session,
                    label,
                    timeout,
                    log,
                    interval=self.watchdog_interval,
                )
                text = session.last_assistant_text()
            except BaseException:
                if shared:
                    log.warning("discarding agent session pid={} after failed call", session.pid)
                    await self._drop_shared(log)
                raise
            finally:
                if not shared:
                    await self._dispose(session, log)

        if text is None or not text.strip():
            return NO_RESPONSE_TEXT
        return text.strip()

    def status(self, now: float | None = None) -> SessionStatus:
        now = self._clock() if now is None else now
        active = self._shared is not None
        created_at = self._created_at if active else None
        if not self.reuse_enabled or created_at is None:
            return SessionStatus(
                active=active,
                reuse_enabled=self.reuse_enabled,
                ttl_seconds=self.ttl_seconds,
                created_at=created_at,
            )
        expires_at = created_at + self.ttl_seconds
        return SessionStatus(
            active=active,
            reuse_enabled=True,
            ttl_seconds=self.ttl_seconds,
            created_at=created_at,
            expires_at=expires_at,
            ttl_remaining=max(0.0, expires_at - now),
        )

    async def expire_now(self, log: Logger | None = None) -> bool:
        log = log or logger
        async with self._lock:
            if self._shared is None:
                return False
            log.info("expiring agent session pid={} on request", self._shared.pid)
            await self._drop_shared(log)
            return True

    async def close(self) -> None:
        async with self._lock:
            await self._drop_shared(logger)
