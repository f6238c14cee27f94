from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from fastapi import FastAPI, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse

from pibot.agent.session_cache import SessionCache
from pibot.execution import bind_execution
from pibot.heartbeat import HeartbeatScheduler
from pibot.runtime_state import TaskArbiter, TaskKind

REQUEST_BODY_LIMIT_BYTES = 32 * 1024

TRIGGER_STATUS_CODES = {
    "started": 202,
    "busy": 409,
    "unavailable": 503,
    "failed": 500,
}

INDEX_HTML = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>pibot</title></head>
<body>
<h1>pibot</h1>
<pre id="status">loading...</pre>
<form onsubmit="return chat(event)">
<input id="message" size="60" placeholder="Message the agent">
<button type="submit">Send</button>
</form>
<pre id="reply"></pre>
<button onclick="fetch('/api/heartbeat', {method: 'POST'}).then(refresh)">Run heartbeat</button>
<button onclick="fetch('/api/session/expire', {method: 'POST'}).then(refresh)">Expire session</button>
<script>
function refresh() {
  fetch('/api/status').then(r => r.json()).then(data => {
    document.getElementById('status').textContent = JSON.stringify(data, null, 2);
  });
}
refresh();
setInterval(refresh, 5000);
function chat(event) {
  event.preventDefault();
  const reply = document.getElementById('reply');
  reply.textContent = 'waiting for the agent...';
  fetch('/api/chat', {
    method: 'POST',
    headers: {'content-type': 'application/json'},
    body: JSON.stringify({message: document.getElementById('message').value}),
  }).then(r => r.json()).then(data => {
    reply.textContent = data.response ?? data.error;
    refresh();
  });
  return false;
}
</script>
</body>
</html>
"""


def list_directory_names(base_dir: Path, child: str) -> list[str]:
    target = base_dir / child
    if not target.is_dir():
        return []
    return sorted(entry.name for entry in target.iterdir() if entry.is_dir())


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def create_app(
    arbiter: TaskArbiter,
    cache: SessionCache,
    heartbeat: HeartbeatScheduler | None,
    agent_dir: Path,
    *,
    call_timeout_seconds: float | None = None,
) -> FastAPI:
    app = FastAPI(title="pibot", docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def no_store(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        response.headers["cache-control"] = "no-store"
        return response

    @app.get("/", response_class=HTMLResponse)
    async def index() -> str:
        return INDEX_HTML

    @app.get("/api/status")
    async def status() -> dict[str, object]:
        payload = arbiter.snapshot().to_dict()
        payload["session"] = cache.status().to_dict()
        return payload

    @app.get("/api/session")
    async def session_status() -> dict[str, object]:
        return cache.status().to_dict()

    @app.post("/api/heartbeat")
    async def trigger_heartbeat() -> JSONResponse:
        log = bind_execution(op="web_heartbeat")
        result = "unavailable" if heartbeat is None else heartbeat.trigger_now(log)
        log.info("manual heartbeat request: {}", result)
        return JSONResponse({"result": result}, status_code=TRIGGER_STATUS_CODES[result])

    @app.post("/api/session/expire")
    async def expire_session() -> dict[str, str]:
        log = bind_execution(op="web_expire")
        expired = await cache.expire_now(log)
        return {"result": "expired" if expired else "no_session"}

    @app.post("/api/chat")
    async def chat(request: Request) -> JSONResponse:
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > REQUEST_BODY_LIMIT_BYTES:
            return _error(413, "request body too large")
        body = await request.body()
        if len(body) > REQUEST_BODY_LIMIT_BYTES:
            return _error(413, "request body too large")

        try:
            message = json.loads(body).get("message")
        except (ValueError, AttributeError):
            message = None
        if not isinstance(message, str):
            return _error(400, "expected JSON body with field `message`")
        prompt = message.strip()
        if not prompt:
            return _error(400, "message cannot be empty")

        log = bind_execution(op="web_chat")
        if not arbiter.try_begin(TaskKind.CHAT_REPLY):
            active = arbiter.snapshot().active_task
            log.warning("web chat rejected: agent busy with {}", active)
            return JSONResponse(
                {"error": "agent is busy", "active_task": str(active)}, status_code=409
            )
        started = time.monotonic()
        try:
            text = await cache.invoke(prompt, call_timeout_seconds, log, label="web chat")
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            arbiter.record_web_chat_error(prompt, exc, duration_ms)
            log.error("web chat failed after {}ms: {}", duration_ms, exc)
            return _error(500, "agent request failed")
        finally:
            arbiter.finish(TaskKind.CHAT_REPLY)

        duration_ms = int((time.monotonic() - started) * 1000)
        arbiter.record_web_chat_success(prompt, text, duration_ms)
        return JSONResponse({"response": text, "duration_ms": duration_ms})

    @app.get("/api/skills")
    async def skills() -> dict[str, list[str]]:
        return {"skills": list_directory_names(agent_dir, "skills")}

    @app.get("/api/extensions")
    async def extensions() -> dict[str, list[str]]:
        return {"extensions": list_directory_names(agent_dir, "extensions")}

    return app
