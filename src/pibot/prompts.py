from __future__ import annotations

import time
from pathlib import Path

MAX_REPLY_LEN = 4000
MAX_LOG_TEXT_LEN = 280

BUSY_TEXT = "I'm busy with another task right now. Please try again in a moment."
GENERATION_ERROR_TEXT = "I hit an error while generating a reply. Please try again in a moment."


def chat_prompt(agent_dir: Path, message: str, replied_to_text: str | None = None) -> str:
    parts = [
        "Runtime context:",
        f"- Config directory: {agent_dir}",
        f"- AGENTS file path (if present): {agent_dir / 'AGENTS.md'}",
        f"- Skills directory (if present): {agent_dir / 'skills'}",
        "",
    ]
    if replied_to_text:
        parts.extend(["The user is replying to this earlier message:", replied_to_text, ""])
    parts.extend(["User message:", message])
    return "\n".join(parts)


def heartbeat_prompt(agent_dir: Path, timestamp: float | None = None) -> str:
    unix_time = int(time.time() if timestamp is None else timestamp)
    return "\n".join(
        [
            "Heartbeat event:",
            "- This is an automated heartbeat from pibot.",
            f"- Follow instructions in HEARTBEAT.md at {agent_dir / 'HEARTBEAT.md'} if present.",
            f"- Timestamp (unix): {unix_time}",
            "",
            "Respond with a short status update about this heartbeat.",
        ]
    )


def trim_reply(text: str) -> str:
    return text[:MAX_REPLY_LEN]


def trim_for_log(text: str) -> str:
    return text[:MAX_LOG_TEXT_LEN]
