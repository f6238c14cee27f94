import asyncio
import json
import os
import shutil
import signal
import time
from pathlib import Path

import pytest

import pibot.agent.pi as pi_module
from pibot.agent.base import AgentProcessError, AgentResponseError, AgentTimeoutError, EventKind
from pibot.agent.pi import PiSession, PiSessionFactory
from pibot.agent.supervision import run_with_supervision
from pibot.execution import bind_execution

EXIT = object()


class FakeStream:
    def __init__(self) -> None:
        self.queue: asyncio.Queue[bytes | None] = asyncio.Queue()

    def feed(self, line: bytes | None) -> None:
        self.queue.put_nowait(line)

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        line = await self.queue.get()
        if line is None:
            raise StopAsyncIteration
        return line


class FakeStdin:
    def __init__(self, process: "FakeProcess") -> None:
        self.process = process
        self.written: list[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.written.append(data)
        self.process.on_input(data)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True
        self.process.finish(0)


class FakeProcess:
    """Replays ``script`` on stdout each time a command line arrives on stdin."""

    def __init__(self, script: list) -> None:
        self.script = script
        self.pid = 4242
        self.returncode: int | None = None
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.stdin = FakeStdin(self)
        self._exited = asyncio.Event()

    def on_input(self, data: bytes) -> None:
        for item in self.script:
            if item is EXIT:
                self.stderr.feed(b"upstream connection reset\n")
                self.finish(1)
            elif isinstance(item, bytes):
                self.stdout.feed(item)
            else:
                self.stdout.feed((json.dumps(item) + "\n").encode())

    def finish(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed(None)
        self.stderr.feed(None)
        self._exited.set()

    def exit_keeping_stdout(self, code: int) -> None:
        # A detached grandchild still holds stdout, so no EOF and wait() blocks.
        self.returncode = code

    def kill(self) -> None:
        self.finish(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


@pytest.fixture
def spawned(monkeypatch):
    calls: list[dict] = []

    def _install(script: list) -> list[dict]:
        async def fake_exec(*args, **kwargs):
            process = FakeProcess(script)
            calls.append({"args": args, "kwargs": kwargs, "process": process})
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
        return calls

    return _install


def test_build_command_adds_provider_and_model() -> None:
    assert PiSession.build_command("pi") == ["pi", "--mode", "rpc", "--no-session"]
    assert PiSession.build_command("/opt/pi", "anthropic", "claude-sonnet") == [
        "/opt/pi",
        "--mode",
        "rpc",
        "--no-session",
        "--provider",
        "anthropic",
        "--model",
        "claude-sonnet",
    ]


def test_prompt_round_trip_collects_reply_and_events(spawned) -> None:
    calls = spawned(
        [
            {"type": "response", "command": "prompt", "success": True},
            {"type": "agent_start"},
            {"type": "tool_execution_start", "toolName": "bash"},
            {"type": "tool_execution_end", "toolName": "bash"},
            b'{"type": "agent_end", "messages": [\n',
            b'{"role": "user", "content": "hi"}, '
            b'{"role": "assistant", "content": [{"type": "text", "text": "Hello!"}]}]}\n',
        ]
    )
    factory = PiSessionFactory(
        "pi", provider="anthropic", agent_dir=Path("/srv/pibot"), working_directory=Path("/tmp")
    )

    async def _run():
        session = await factory()
        queue = session.subscribe()
        await session.prompt("hi")
        await session.wait_for_idle()
        kinds = []
        while not queue.empty():
            kinds.append(queue.get_nowait().kind)
        text = session.last_assistant_text()
        await session.dispose()
        return session, kinds, text

    session, kinds, text = asyncio.run(_run())

    assert text == "Hello!"
    assert kinds == [
        EventKind.OTHER,
        EventKind.START,
        EventKind.TOOL_CALL_START,
        EventKind.TOOL_CALL_END,
        EventKind.COMPLETION,
    ]
    call = calls[0]
    assert call["args"] == ("pi", "--mode", "rpc", "--no-session", "--provider", "anthropic")
    assert call["kwargs"]["start_new_session"] is True
    assert call["kwargs"]["cwd"] == "/tmp"
    assert call["kwargs"]["env"]["PI_CODING_AGENT_DIR"] == "/srv/pibot"
    sent = json.loads(call["process"].stdin.written[0])
    assert sent == {"type": "prompt", "message": "hi"}
    assert call["process"].stdin.closed is True
    assert session.returncode == 0


def test_message_end_text_is_used_when_completion_has_no_messages(spawned) -> None:
    spawned(
        [
            {
                "type": "message_end",
                "message": {"role": "assistant", "content": [{"type": "text", "text": "Done."}]},
            },
            {"type": "agent_end"},
        ]
    )

    async def _run() -> str | None:
        session = await PiSession.spawn("pi")
        await session.prompt("go")
        await session.wait_for_idle()
        text = session.last_assistant_text()
        await session.dispose()
        return text

    assert asyncio.run(_run()) == "Done."


def test_rejected_command_fails_the_wait(spawned) -> None:
    spawned([{"type": "response", "command": "prompt", "success": False, "error": "busy"}])

    async def _run() -> None:
        session = await PiSession.spawn("pi")
        try:
            await session.prompt("hi")
            await session.wait_for_idle()
        finally:
            await session.dispose()

    with pytest.raises(AgentResponseError, match="busy"):
        asyncio.run(_run())


def test_process_exit_before_completion_fails_with_exit_code(spawned) -> None:
    spawned([{"type": "agent_start"}, EXIT])

    async def _run() -> None:
        session = await PiSession.spawn("pi")
        try:
            await session.prompt("hi")
            await session.wait_for_idle()
        finally:
            await session.dispose()

    with pytest.raises(AgentProcessError) as exc_info:
        asyncio.run(_run())

    assert exc_info.value.exit_code == 1


def test_missing_executable_is_not_retriable(monkeypatch) -> None:
    async def fake_exec(*args, **kwargs):
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)

    with pytest.raises(AgentProcessError) as exc_info:
        asyncio.run(PiSession.spawn("/missing/pi"))

    assert exc_info.value.retriable is False
    assert "/missing/pi" in str(exc_info.value)


def test_kill_signals_the_process_group(spawned, monkeypatch) -> None:
    spawned([])
    killed: list[tuple[int, int]] = []

    def fake_killpg(pid: int, sig: int) -> None:
        killed.append((pid, sig))

    monkeypatch.setattr(os, "killpg", fake_killpg, raising=False)

    async def _run() -> tuple[bool, bool]:
        session = await PiSession.spawn("pi")
        first = session.kill()
        await session.dispose()
        return first, session.kill()

    assert asyncio.run(_run()) == (True, False)
    assert killed == [(4242, signal.SIGKILL)]


def test_kill_tolerates_vanished_process(spawned, monkeypatch) -> None:
    spawned([])

    def fake_killpg(pid: int, sig: int) -> None:
        raise ProcessLookupError(pid)

    monkeypatch.setattr(os, "killpg", fake_killpg, raising=False)

    async def _run() -> bool:
        session = await PiSession.spawn("pi")
        result = session.kill()
        await session.dispose()
        return result

    assert asyncio.run(_run()) is False


def test_prompt_after_dispose_raises(spawned) -> None:
    spawned([])

    async def _run() -> None:
        session = await PiSession.spawn("pi")
        await session.dispose()
        await session.prompt("hi")

    with pytest.raises(AgentProcessError):
        asyncio.run(_run())


@pytest.fixture
def short_grace(monkeypatch) -> None:
    monkeypatch.setattr(pi_module, "EXIT_POLL_SECONDS", 0.01)
    monkeypatch.setattr(pi_module, "EXIT_DRAIN_SECONDS", 0.01)
    monkeypatch.setattr(pi_module, "DISPOSE_GRACE_SECONDS", 0.05)


def test_wait_fails_on_exit_even_when_stdout_stays_open(
    spawned, monkeypatch, short_grace
) -> None:
    calls = spawned([])

    async def _run() -> None:
        session = await PiSession.spawn("pi")
        process = calls[0]["process"]
        monkeypatch.setattr(
            os, "killpg", lambda pid, sig: process.exit_keeping_stdout(-9), raising=False
        )
        await session.prompt("hi")
        assert session.kill() is True
        try:
            await asyncio.wait_for(session.wait_for_idle(), timeout=2.0)
        finally:
            await asyncio.wait_for(session.dispose(), timeout=2.0)

    with pytest.raises(AgentProcessError) as exc_info:
        asyncio.run(_run())

    assert exc_info.value.exit_code == -9


def test_supervised_call_times_out_when_killed_agent_keeps_stdout_open(
    spawned, monkeypatch, short_grace
) -> None:
    calls = spawned([{"type": "agent_start"}])
    started = time.monotonic()

    async def _run() -> None:
        session = await PiSession.spawn("pi")
        process = calls[0]["process"]
        monkeypatch.setattr(
            os, "killpg", lambda pid, sig: process.exit_keeping_stdout(-9), raising=False
        )
        await session.prompt("hi")
        try:
            await asyncio.wait_for(
                run_with_supervision(
                    session, "chat reply", 0.05, bind_execution(op="test"), interval=0.01
                ),
                timeout=3.0,
            )
        finally:
            await asyncio.wait_for(session.dispose(), timeout=2.0)

    with pytest.raises(AgentTimeoutError) as exc_info:
        asyncio.run(_run())

    assert isinstance(exc_info.value.__cause__, AgentProcessError)
    assert time.monotonic() - started < 3.0


def test_session_without_stdout_still_fails_on_exit(short_grace) -> None:
    async def _run() -> None:
        process = FakeProcess([])
        process.stdout = None
        session = PiSession(process, "pi")
        try:
            await session.prompt("hi")
            process.exit_keeping_stdout(3)
            await asyncio.wait_for(session.wait_for_idle(), timeout=2.0)
        finally:
            await asyncio.wait_for(session.dispose(), timeout=2.0)

    with pytest.raises(AgentProcessError) as exc_info:
        asyncio.run(_run())

    assert exc_info.value.exit_code == 3


@pytest.mark.skipif(
    os.name != "posix" or shutil.which("setsid") is None, reason="needs setsid"
)
def test_real_agent_with_detached_child_times_out(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(pi_module, "EXIT_POLL_SECONDS", 0.05)
    monkeypatch.setattr(pi_module, "EXIT_DRAIN_SECONDS", 0.05)
    monkeypatch.setattr(pi_module, "DISPOSE_GRACE_SECONDS", 0.2)
    script = tmp_path / "fake-pi"
    script.write_text("#!/bin/sh\nsetsid sleep 5 &\nexec sleep 1000\n", encoding="utf-8")
    script.chmod(0o755)
    started = time.monotonic()

    async def _run() -> int | None:
        session = await PiSession.spawn(str(script))
        try:
            await session.prompt("hi")
            await asyncio.wait_for(
                run_with_supervision(
                    session, "chat reply", 0.3, bind_execution(op="test"), interval=0.1
                ),
                timeout=5.0,
            )
        finally:
            await session.dispose()
        return session.returncode

    with pytest.raises(AgentTimeoutError):
        asyncio.run(_run())

    assert time.monotonic() - started < 5.0
