from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click
import httpx

from pibot import __version__
from pibot.app import beat, build_runtime, serve
from pibot.config import (
    BotConfig,
    ConfigError,
    default_config_path,
    load_config,
    save_config,
)
from pibot.execution import configure_logging, debug_from_env


def _resolve_config_path(config_value: str | None) -> Path:
    if not config_value:
        return default_config_path()
    return Path(config_value).expanduser().resolve()


def _load(config_path: Path) -> BotConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(__version__, prog_name="pibot")
def cli() -> None:
    """Telegram bridge for the pi coding agent."""


@cli.command("init")
@click.argument("config_value", required=False)
@click.option("--token", prompt="Telegram bot token", hide_input=True, help="Telegram bot token.")
@click.option("--owner-chat-id", type=int, default=None, help="Only answer this chat.")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config.")
def init_command(
    config_value: str | None, token: str, owner_chat_id: int | None, force: bool
) -> None:
    config_path = _resolve_config_path(config_value)
    if config_path.exists() and not force:
        raise click.ClickException(f"{config_path} already exists; pass --force to overwrite it.")
    if not token.strip():
        raise click.ClickException("Telegram bot token cannot be empty.")

    save_config(
        config_path, BotConfig(telegram_bot_token=token.strip(), owner_chat_id=owner_chat_id)
    )
    agent_dir = config_path.parent
    for child in ("skills", "extensions"):
        (agent_dir / child).mkdir(parents=True, exist_ok=True)

    click.echo(f"Config: {config_path}")
    click.echo(f"Agent dir: {agent_dir}")


@cli.command("serve")
@click.argument("config_value", required=False)
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging.")
def serve_command(config_value: str | None, debug: bool) -> None:
    configure_logging(debug or debug_from_env())
    config_path = _resolve_config_path(config_value)
    runtime = build_runtime(_load(config_path), config_path)
    try:
        asyncio.run(serve(runtime))
    except KeyboardInterrupt:
        click.echo("Interrupted.", err=True)


@cli.command("beat")
@click.argument("config_value", required=False)
@click.option("--debug", is_flag=True, default=False, help="Enable debug logging.")
def beat_command(config_value: str | None, debug: bool) -> None:
    configure_logging(debug or debug_from_env())
    config_path = _resolve_config_path(config_value)
    runtime = build_runtime(_load(config_path), config_path)
    if not asyncio.run(beat(runtime)):
        raise click.ClickException("Heartbeat failed.")
    click.echo("Heartbeat complete.")


@cli.command("status")
@click.option("--url", default="http://127.0.0.1:8787", show_default=True)
def status_command(url: str) -> None:
    try:
        response = httpx.get(f"{url.rstrip('/')}/api/status", timeout=5.0)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise click.ClickException(f"Failed to reach pibot at {url}: {exc}") from exc
    click.echo(json.dumps(response.json(), ensure_ascii=False, indent=2))
