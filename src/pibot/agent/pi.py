from __future__ import annotations

import asyncio
import json
import os
import signal
from collections import deque
from pathlib import Path
from typing import Any

from loguru import logger

from pibot.agent.base import (
    AgentEvent,
    AgentProcessError,
    AgentResponseError,
    AgentSession,
    EventKind,
)

STREAM_LIMIT_BYTES = 16 * 1024 * 1024
DISPOSE_GRACE_SECONDS = 2.0
EXIT_DRAIN_SECONDS = 1.0
EXIT_POLL_SECONDS = 0.25
STDERR_TAIL_LINES = 20


def _extract_text(message: Any) -> str:
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type", "text") == "text":
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return ""


def _last_assistant_text(messages: Any) -> str | None:
    if not isinstance(messages, list):
        return None
    for message in reversed(messages):
        if isinstance(message, dict) and message.get("role") == "assistant":
            text = _extract_text(message).strip()
            if text:
                return text
    return None


class PiSession(AgentSession):
    """A ``pi --mode rpc`` process driven over JSON lines on stdin/stdout."""

    def __init__(self, process: asyncio.subprocess.Process, executable: str) -> None:
        super().__init__()
        self._process = process
        self.executable = executable
        self._pending: asyncio.Future[None] | None = None
        self._last_text: str | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._disposed = False
        self._reader = asyncio.create_task(self._read_events())
        self._stderr_reader = asyncio.create_task(self._read_stderr())
        self._exit_watcher = asyncio.create_task(self._watch_exit())

    @staticmethod
    def build_command(
        executable: str,
        provider: str | None = None,
        model: str | None = None,
    ) -> list[str]:
        command = [executable, "--mode", "rpc", "--no-session"]
        if provider:
            command.extend(["--provider", provider])
        if model:
            command.extend(["--model", model])
        return command

    @classmethod
    async def spawn(
        cls,
        executable: str,
        *,
        provider: str | None = None,
        model: str | None = None,
        agent_dir: Path | None = None,
        working_directory: Path | None = None,
    ) -> PiSession:
        command = cls.build_command(executable, provider, model)
        env = os.environ.copy()
        if agent_dir is not None:
            env["PI_CODING_AGENT_DIR"] = str(agent_dir)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory) if working_directory else None,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"pi executable not found: {executable}", retriable=False
            ) from exc
        except OSError as exc:
            raise AgentProcessError(f"failed to start pi agent: {exc}") from exc

        if process.stdin is None or process.stdout is None:
            raise AgentProcessError("pi agent did not expose stdio pipes.", retriable=False)
        logger.debug("spawned pi agent pid={} command={}", process.pid, command[:4])
        return cls(process, executable)

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def _exit_error(self, return_code: int | None) -> AgentProcessError:
        detail = " | ".join(self._stderr_tail)
        message = f"pi agent exited with code {return_code}"
        if detail:
            message = f"{message}: {detail[:400]}"
        return AgentProcessError(message, exit_code=return_code)

    def _resolve_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(None)

    def _fail_pending(self, error: BaseException) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(error)

    def _handle_payload(self, payload: Any) -> None:
        event = AgentEvent.from_payload(payload)
        self.publish(event)
        if not isinstance(payload, dict):
            return

        event_type = payload.get("type")
        if event_type == "message_end":
            message = payload.get("message")
            if isinstance(message, dict) and message.get("role") == "assistant":
                text = _extract_text(message).strip()
                if text:
                    self._last_text = text
        elif event_type == "response" and payload.get("success") is False:
            error = payload.get("error")
            self._fail_pending(
                AgentResponseError(
                    f"pi rejected command {payload.get('command')!r}: {error or 'unknown error'}"
                )
            )
        elif event.kind is EventKind.COMPLETION:
            text = _last_assistant_text(payload.get("messages"))
            if text:
                self._last_text = text
            self._resolve_pending()
        elif event.kind is EventKind.ERROR:
            message = payload.get("message") or payload.get("error") or "unknown error"
            self._fail_pending(AgentResponseError(f"pi reported an error: {message}"))

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _read_events(self) -> None:
        stdout = self._process.stdout
        if stdout is None:
            return
        parse_buffer = ""
        try:
            async for raw_line in stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    payload = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    logger.debug("pi pid={} emitted non-JSON output: {}", self.pid, line[:200])
                    self.publish(AgentEvent.from_payload(line))
                    continue
                self._handle_payload(payload)
        except (ValueError, OSError) as exc:
            logger.warning("pi pid={} stdout reader failed: {}", self.pid, exc)

    async def _wait_for_exit(self) -> int | None:
        # Process.wait() also waits for the pipes to close, which a detached
        # grandchild can hold open forever; the return code is set on exit.
        waiter = asyncio.ensure_future(self._process.wait())
        try:
            while self._process.returncode is None and not waiter.done():
                await asyncio.wait({waiter}, timeout=EXIT_POLL_SECONDS)
        finally:
            if not waiter.done():
                waiter.cancel()
        return self._process.returncode

    async def _watch_exit(self) -> None:
        return_code = await self._wait_for_exit()
        # Let the reader deliver output written just before exit.
        await asyncio.wait({self._reader}, timeout=EXIT_DRAIN_SECONDS)
        self._fail_pending(self._exit_error(return_code))

    async def _read_stderr(self) -> None:
        stderr = self._process.stderr
        if stderr is None:
            return
        try:
            async for raw_line in stderr:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if line:
                    self._stderr_tail.append(line)
        except (ValueError, OSError):
            return

    async def prompt(self, message: str) -> None:
        if self._disposed or self._process.returncode is not None:
            raise self._exit_error(self._process.returncode)
        stdin = self._process.stdin
        if stdin is None:
            raise AgentProcessError("pi agent stdin is closed.", retriable=False)

        self._last_text = None
        self._pending = asyncio.get_running_loop().create_future()
        command = {"type": "prompt", "message": message}
        try:
            stdin.write((json.dumps(command, ensure_ascii=False) + "\n").encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._pending = None
            raise AgentProcessError(f"failed sending prompt to pi agent: {exc}") from exc

    async def wait_for_idle(self) -> None:
        if self._pending is None:
            raise AgentProcessError("no prompt in flight", retriable=False)
        await self._pending

    def last_assistant_text(self) -> str | None:
        return self._last_text

    def kill(self) -> bool:
        if self._process.returncode is not None:
            return False
        try:
            if hasattr(os, "killpg"):
                os.killpg(self._process.pid, signal.SIGKILL)
            else:
                self._process.kill()
        except ProcessLookupError:
            return False
        return True

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True

        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            try:
                stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                pass
        try:
            await asyncio.wait_for(self._wait_for_exit(), timeout=DISPOSE_GRACE_SECONDS)
        except TimeoutError:
            self.kill()
            try:
                await asyncio.wait_for(self._wait_for_exit(), timeout=DISPOSE_GRACE_SECONDS)
            except TimeoutError:
                logger.warning("pi agent pid={} did not exit after kill", self.pid)

        for task in (self._exit_watcher, self._reader, self._stderr_reader):
            try:
                await asyncio.wait_for(task, timeout=DISPOSE_GRACE_SECONDS)
            except TimeoutError:
                task.cancel()
        self._fail_pending(AgentProcessError("pi session disposed", retriable=False))
        logger.debug("disposed pi agent pid={} exit_code={}", self.pid, self._process.returncode)


class PiSessionFactory:
    """Creates fresh pi sessions from the configured agent settings."""

    def __init__(
        self,
        executable: str = "pi",
        *,
        provider: str | None = None,
        model: str | None = None,
        agent_dir: Path | None = None,
        working_directory: Path | None = None,
    ) -> None:
        self.executable = executable
        self.provider = provider
        self.model = model
        self.agent_dir = agent_dir
        self.working_directory = working_directory

    async def __call__(self) -> PiSession:
        return await PiSession.spawn(
            self.executable,
            provider=self.provider,
            model=self.model,
            agent_dir=self.agent_dir,
            working_directory=self.working_directory,
        )
