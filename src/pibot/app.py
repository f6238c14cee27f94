from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

import uvicorn
from loguru import logger

from pibot.agent.pi import PiSessionFactory
from pibot.agent.session_cache import SessionCache
from pibot.bot import ChatBot
from pibot.config import BotConfig
from pibot.execution import bind_execution
from pibot.heartbeat import HeartbeatScheduler
from pibot.runtime_state import TaskArbiter, TaskKind
from pibot.telegram import TelegramClient
from pibot.web import create_app


@dataclass(slots=True)
class Runtime:
    config: BotConfig
    config_path: Path
    agent_dir: Path
    arbiter: TaskArbiter
    cache: SessionCache
    heartbeat: HeartbeatScheduler
    telegram: TelegramClient
    bot: ChatBot


def build_runtime(config: BotConfig, config_path: Path) -> Runtime:
    agent_dir = config.agent_directory(config_path)
    arbiter = TaskArbiter()
    factory = PiSessionFactory(
        config.pi_executable,
        provider=config.provider,
        model=config.model,
        agent_dir=agent_dir,
        working_directory=config.resolved_working_directory(config_path),
    )
    cache = SessionCache(
        factory,
        ttl_seconds=config.session_ttl_seconds,
        watchdog_interval=config.watchdog_interval_seconds,
    )
    telegram = TelegramClient(config.telegram_bot_token)
    bot = ChatBot(
        telegram,
        arbiter,
        cache,
        agent_dir=agent_dir,
        polling_timeout_seconds=config.polling_timeout_seconds,
        call_timeout_seconds=config.call_timeout_seconds,
        owner_chat_id=config.owner_chat_id,
    )
    heartbeat = HeartbeatScheduler(
        arbiter,
        cache,
        agent_dir=agent_dir,
        interval_seconds=config.heartbeat_interval_seconds,
        timeout_seconds=config.heartbeat_timeout_seconds,
        notify=bot.send_to_owner if config.owner_chat_id is not None else None,
    )
    return Runtime(
        config=config,
        config_path=config_path,
        agent_dir=agent_dir,
        arbiter=arbiter,
        cache=cache,
        heartbeat=heartbeat,
        telegram=telegram,
        bot=bot,
    )


async def _serve_web(server: uvicorn.Server, host: str, port: int) -> None:
    try:
        await server.serve()
    except SystemExit:
        # uvicorn exits the process when it cannot bind; keep the bot running.
        logger.error("web ui: failed to listen on {}:{}", host, port)


async def serve(runtime: Runtime) -> None:
    config = runtime.config
    logger.info("config path: {}", runtime.config_path)
    logger.info("agent dir: {}", runtime.agent_dir)
    logger.info(
        "heartbeat interval={}s session ttl={}s call timeout={}s",
        config.heartbeat_interval_seconds,
        config.session_ttl_seconds,
        config.call_timeout_seconds,
    )

    stop = asyncio.Event()
    critical = [
        asyncio.create_task(runtime.bot.run(stop), name="poll-loop"),
        asyncio.create_task(runtime.heartbeat.run_forever(stop), name="heartbeat"),
    ]
    background: list[asyncio.Task[None]] = []
    server: uvicorn.Server | None = None
    if config.web_enabled:
        app = create_app(
            runtime.arbiter,
            runtime.cache,
            runtime.heartbeat,
            runtime.agent_dir,
            call_timeout_seconds=config.call_timeout_seconds,
        )
        server = uvicorn.Server(
            uvicorn.Config(app, host=config.web_host, port=config.web_port, log_level="warning")
        )
        background.append(
            asyncio.create_task(
                _serve_web(server, config.web_host, config.web_port), name="web-ui"
            )
        )
        logger.info("web ui listening at http://{}:{}", config.web_host, config.web_port)

    logger.info("pibot started")
    try:
        done, _ = await asyncio.wait(critical, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()
    finally:
        stop.set()
        runtime.heartbeat.stop()
        if server is not None:
            server.should_exit = True
        for task in critical:
            task.cancel()
        await asyncio.gather(*critical, *background, return_exceptions=True)
        await runtime.heartbeat.wait_background()
        await runtime.cache.close()
        await runtime.telegram.aclose()
        logger.info("pibot stopped")


async def beat(runtime: Runtime) -> bool:
    log = bind_execution(op="beat")
    log.info("running manual heartbeat")
    if not runtime.arbiter.try_begin(TaskKind.HEARTBEAT):
        log.error("agent is busy")
        return False
    try:
        ok = await runtime.heartbeat.run_once(log)
    finally:
        runtime.arbiter.finish(TaskKind.HEARTBEAT)
        await runtime.cache.close()
        await runtime.telegram.aclose()
    log.info("manual heartbeat finished ok={}", ok)
    return ok
