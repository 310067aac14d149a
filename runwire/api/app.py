from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from .. import __version__
from ..channels import WorkerSocket
from ..errors import NotFound, RunwireError, Unauthorized
from ..events import RunEvent
from ..runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


async def runwire_error_handler(_req: Request, exc: RunwireError) -> JSONResponse:
    status_code = 400
    if isinstance(exc, Unauthorized):
        status_code = 401
    elif isinstance(exc, NotFound):
        status_code = 404
    return JSONResponse(status_code=status_code, content={"errors": exc.to_reply()})


async def stream_events(
    websocket: WebSocket, subscription: AsyncContextManager[AsyncIterator[RunEvent]]
) -> None:
    """Forward events to a WebSocket client as JSON text until it disconnects."""
    async with subscription as events:
        await websocket.accept()

        async def forward() -> None:
            async for event in events:
                await websocket.send_text(event.to_json())

        async def until_disconnect() -> None:
            while (await websocket.receive())["type"] != "websocket.disconnect":
                pass

        tasks = [asyncio.create_task(forward()), asyncio.create_task(until_disconnect())]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning(f"Event stream closed: {exc}")


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP/WebSocket surface around a runtime.

    The runtime's database schema is created and its transport connected
    during application startup.
    """
    runtime = runtime or build_runtime()

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title="runwire", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.add_exception_handler(RunwireError, runwire_error_handler)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @app.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str) -> Dict[str, Any]:
        run = await runtime.runs.cancel_run(run_id)
        return {"id": run.id, "state": run.state}

    @app.websocket("/runs/{run_id}/events")
    async def run_events(websocket: WebSocket, run_id: str) -> None:
        await stream_events(websocket, runtime.events.subscribe_run(run_id))

    @app.websocket("/projects/{project_id}/events")
    async def project_events(websocket: WebSocket, project_id: str) -> None:
        await stream_events(websocket, runtime.events.subscribe_project(project_id))

    @app.websocket("/worker/websocket")
    async def worker_websocket(websocket: WebSocket) -> None:
        token = websocket.query_params.get("token", "")
        try:
            claims = runtime.tokens.verify_worker_token(token)
        except Unauthorized:
            logger.info("Rejected worker connection with invalid token")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        socket = WorkerSocket(runtime, claims, websocket.send_text)
        logger.info(f"Worker {socket.worker_name} connected")
        try:
            while True:
                await socket.handle_text(await websocket.receive_text())
        except WebSocketDisconnect:
            logger.info(f"Worker {socket.worker_name} disconnected")
        finally:
            await socket.close()

    return app
