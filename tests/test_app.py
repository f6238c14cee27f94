import asyncio
from pathlib import Path

from fakes import FakeFactory

from pibot.agent.base import AgentResponseError
from pibot.agent.pi import PiSessionFactory
from pibot.agent.session_cache import SessionCache
from pibot.app import Runtime, beat, build_runtime
from pibot.config import BotConfig
from pibot.heartbeat import HeartbeatScheduler
from pibot.runtime_state import TaskArbiter, TaskKind


class FakeTelegram:
    def __init__(self) -> None:
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


def _runtime(tmp_path: Path, factory: FakeFactory) -> Runtime:
    config = BotConfig(telegram_bot_token="t")
    arbiter = TaskArbiter()
    cache = SessionCache(factory, ttl_seconds=900, watchdog_interval=0.01)
    heartbeat = HeartbeatScheduler(
        arbiter, cache, agent_dir=tmp_path, interval_seconds=300, timeout_seconds=10
    )
    return Runtime(
        config=config,
        config_path=tmp_path / "config.toml",
        agent_dir=tmp_path,
        arbiter=arbiter,
        cache=cache,
        heartbeat=heartbeat,
        telegram=FakeTelegram(),
        bot=None,
    )


def test_build_runtime_wires_components(tmp_path: Path) -> None:
    config = BotConfig(
        telegram_bot_token="t",
        owner_chat_id=7,
        pi_executable="/opt/pi",
        model="claude-sonnet",
        working_directory="work",
        session_ttl_seconds=60,
    )

    runtime = build_runtime(config, tmp_path / "config.toml")

    assert runtime.agent_dir == tmp_path.resolve()
    assert runtime.cache.ttl_seconds == 60
    assert runtime.bot.owner_chat_id == 7
    assert runtime.heartbeat.notify == runtime.bot.send_to_owner
    assert runtime.heartbeat.arbiter is runtime.arbiter
    assert runtime.bot.arbiter is runtime.arbiter
    factory = runtime.cache._factory
    assert isinstance(factory, PiSessionFactory)
    assert factory.executable == "/opt/pi"
    assert factory.agent_dir == tmp_path.resolve()
    assert factory.working_directory == tmp_path.resolve() / "work"
    asyncio.run(runtime.telegram.aclose())


def test_manual_beat_runs_once_and_cleans_up(tmp_path: Path) -> None:
    factory = FakeFactory(reply="fine")
    runtime = _runtime(tmp_path, factory)

    assert asyncio.run(beat(runtime)) is True

    assert runtime.arbiter.snapshot().heartbeat_run_count == 1
    assert runtime.arbiter.snapshot().busy is False
    assert factory.created[0].disposed is True
    assert runtime.telegram.closed is True


def test_manual_beat_reports_failure(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path, FakeFactory(fail_wait=AgentResponseError("boom")))

    assert asyncio.run(beat(runtime)) is False
    assert runtime.arbiter.snapshot().heartbeat_error_count == 1


def test_manual_beat_refuses_when_busy(tmp_path: Path) -> None:
    factory = FakeFactory()
    runtime = _runtime(tmp_path, factory)
    runtime.arbiter.try_begin(TaskKind.CHAT_REPLY)

    assert asyncio.run(beat(runtime)) is False
    assert factory.created == []
