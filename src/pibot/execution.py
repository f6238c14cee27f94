"""Execution ids and log setup.

Every request (one chat message, one heartbeat, one dashboard action) gets a
short random execution id. Instead of stashing it in thread-local state, the id
is bound onto a loguru logger and that logger is handed down explicitly to every
function taking part in the request, so interleaved log lines from concurrent
requests can still be told apart.
"""

from __future__ import annotations

import os
import secrets
import sys
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from loguru import Logger

EXECUTION_ID_HEX_LEN = 16
MAX_EXECUTION_ID_LEN = 32
DEBUG_ENV_VAR = "PIBOT_DEBUG"

_FALSE_FLAGS = {"", "0", "false", "off", "no"}


def parse_debug_flag(value: str) -> bool:
    return value.strip().lower() not in _FALSE_FLAGS


def debug_from_env(environ: Mapping[str, str] | None = None) -> bool:
    source = os.environ if environ is None else environ
    value = source.get(DEBUG_ENV_VAR)
    if value is None:
        return False
    return parse_debug_flag(value)


def _format_record(record: dict[str, Any]) -> str:
    parts = [
        "time={time:YYYY-MM-DD[T]HH:mm:ss.SSS[Z]!UTC}",
        "level={level}",
        "scope={name}",
    ]
    extra = record["extra"]
    if extra.get("exec_id"):
        parts.append("exec_id={extra[exec_id]}")
    if extra.get("op"):
        parts.append("op={extra[op]}")
    parts.append("msg={message}")
    return " ".join(parts) + "\n{exception}"


def configure_logging(debug: bool = False) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if debug else "INFO",
        format=_format_record,
        backtrace=False,
        diagnose=False,
    )


def new_execution_id() -> str:
    return secrets.token_hex(EXECUTION_ID_HEX_LEN // 2)


def bind_execution(exec_id: str | None = None, op: str | None = None) -> Logger:
    """Return a logger tagged with ``exec_id`` (generated when omitted) and ``op``."""
    execution_id = (exec_id or new_execution_id())[:MAX_EXECUTION_ID_LEN]
    return logger.bind(exec_id=execution_id, op=op)

