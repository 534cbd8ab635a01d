"""Local HTTP/WebSocket API for the UI and the recognition engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from autopaste import __version__
from autopaste.config import Config
from autopaste.service import PasteService
from autopaste.types import HealthCheck, TargetChangedMessage
from autopaste.window import TargetWindow

logger = logging.getLogger(__name__)


class TextRequest(BaseModel):
    text: str = ""


class AutoPasteToggle(BaseModel):
    enabled: bool


class FocusEvent(BaseModel):
    focused: bool


def target_changed_message(window: TargetWindow | None) -> TargetChangedMessage:
    return {
        "type": "target-window-changed",
        "window": window.to_payload() if window else None,
    }


class EventHub:
    """Fans change notifications out to every connected UI socket."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def add(self, websocket: WebSocket) -> None:
        self._clients.add(websocket)

    def remove(self, websocket: WebSocket) -> None:
        self._clients.discard(websocket)

    async def broadcast(self, message: dict[str, Any]) -> None:
        for websocket in list(self._clients):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.info("Dropping event client: %s", e)
                self.remove(websocket)

    def publish(self, message: dict[str, Any]) -> None:
        """Schedule a broadcast from synchronous code running on the loop."""
        task = asyncio.get_running_loop().create_task(self.broadcast(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def _service(request: Request) -> PasteService:
    return request.app.state.service


def create_app(
    config: Config | None = None,
    service: PasteService | None = None,
    start_background: bool = True,
) -> FastAPI:
    config = config or (service.config if service else Config.from_env())
    service = service or PasteService.from_config(config)
    hub = EventHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        unsubscribe = service.tracker.subscribe(
            lambda window: hub.publish(target_changed_message(window))
        )
        if start_background:
            service.start()
            logger.info("Window tracking and watchdog started")

        yield

        unsubscribe()
        await service.stop()
        logger.info("Paste service stopped")

    app = FastAPI(
        title="Autopaste API",
        description="Clipboard and auto-paste delivery for local dictation",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.hub = hub

    @app.get("/health")
    async def health_check(request: Request):
        health: HealthCheck = {
            "status": "healthy",
            "tracking": _service(request).tracker.is_running,
        }
        return JSONResponse(health)

    @app.get("/config")
    async def get_config(request: Request):
        svc = _service(request)
        queue = svc.config.queue
        return JSONResponse({
            "auto_paste_enabled": svc.auto_paste_enabled,
            "max_retries": queue.max_retries,
            "paste_timeout_s": queue.paste_timeout_s,
            "inter_operation_delay_s": queue.inter_operation_delay_s,
            "poll_interval_s": svc.config.tracker.poll_interval_s,
            "copy_cooldown_s": svc.config.copy_cooldown_s,
        })

    @app.post("/copy")
    async def copy_text(body: TextRequest, request: Request):
        return JSONResponse(await _service(request).copy(body.text))

    @app.post("/paste")
    async def paste_text(body: TextRequest, request: Request):
        return JSONResponse(await _service(request).auto_paste(body.text))

    @app.get("/target")
    async def get_target(request: Request, refresh: bool = False):
        svc = _service(request)
        window = await svc.refresh_target() if refresh else svc.current_target()
        return JSONResponse(window.to_payload() if window else None)

    @app.post("/focus")
    async def focus_changed(body: FocusEvent, request: Request):
        logger.debug("Application window %s", "focused" if body.focused else "blurred")
        window = await _service(request).refresh_target()
        return JSONResponse(window.to_payload() if window else None)

    @app.post("/auto-paste")
    async def toggle_auto_paste(body: AutoPasteToggle, request: Request):
        enabled = _service(request).set_auto_paste(body.enabled)
        return JSONResponse({"enabled": enabled})

    @app.post("/reset")
    async def reset_state(request: Request):
        return JSONResponse(_service(request).reset())

    @app.post("/recognized")
    async def recognized(body: TextRequest, request: Request):
        return JSONResponse(await _service(request).handle_recognized(body.text))

    @app.delete("/transcript")
    async def clear_transcript(request: Request):
        _service(request).clear_transcript()
        return JSONResponse({"cleared": True})

    @app.websocket("/ws/events")
    async def events(websocket: WebSocket):
        client_id = id(websocket)
        await websocket.accept()
        hub.add(websocket)
        logger.info("Event client %s connected", client_id)

        try:
            await websocket.send_json(target_changed_message(service.current_target()))
            while True:
                # Clients only listen; reading detects the disconnect
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("Event client %s disconnected", client_id)
        finally:
            hub.remove(websocket)

    return app
