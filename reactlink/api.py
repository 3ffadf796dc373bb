"""HTTP/WebSocket surface over one :class:`HardwareLink`."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from reactlink.config import LinkConfig
from reactlink.errors import LinkError, NotConnected
from reactlink.events import Channel
from reactlink.link import HardwareLink
from reactlink.scanner import discover

logger = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 1000


def _payload(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return value


def _link(request: Request) -> HardwareLink:
    return request.app.state.link


async def _guarded(action) -> Dict[str, Any]:
    try:
        await action
    except NotConnected as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except LinkError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"status": "ok"}


def create_app(link: Optional[HardwareLink] = None) -> FastAPI:
    """Build the app around ``link`` (a new one from the environment if omitted)."""
    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        try:
            await app.state.link.stop()
        except Exception:
            logger.exception("Stopping the link during shutdown failed")

    app = FastAPI(title="reactlink", version="0.1.0", lifespan=lifespan)
    app.state.link = link if link is not None else HardwareLink(LinkConfig.from_env())

    @app.get("/health")
    async def health():
        return {"status": "ok", "time": time.time()}

    @app.get("/ports")
    async def ports(include_all: bool = Query(False, alias="all", description="List every serial port")):
        found = await discover(include_all=include_all)
        return [port.to_dict() for port in found]

    @app.post("/link/start")
    async def start(request: Request):
        link = _link(request)
        if link.connected:
            return {"status": "already-running", "port": link.manager.port}
        ok = await link.start()
        state = link.status()
        return {
            "status": "connected" if ok else "failed",
            "port": state.get("port"),
            "error": state.get("last_error"),
        }

    @app.post("/link/stop")
    async def stop(request: Request):
        link = _link(request)
        if not link.connected and not link.running:
            return {"status": "idle"}
        await link.stop()
        return {"status": "stopped"}

    @app.get("/link/status")
    async def status(request: Request):
        return _link(request).status()

    @app.post("/link/calibrate")
    async def calibrate(request: Request):
        link = _link(request)
        if not link.connected:
            raise HTTPException(status_code=409, detail="button box is not connected")
        result = await link.calibrate()
        return result.to_dict()

    @app.post("/link/led/{button}")
    async def led(request: Request, button: int, state: str = Query("on", pattern="^(on|off)$")):
        return await _guarded(_link(request).set_led(button, state == "on"))

    @app.post("/link/icon/{name}")
    async def icon(request: Request, name: str):
        return await _guarded(_link(request).show_icon(name))

    @app.post("/link/clear")
    async def clear(request: Request):
        return await _guarded(_link(request).clear_display())

    @app.websocket("/events")
    async def events(ws: WebSocket):
        link: HardwareLink = ws.app.state.link
        queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)

        def _forward(channel: Channel, payload: Any) -> None:
            try:
                queue.put_nowait({"event": channel.value, "data": _payload(payload)})
            except asyncio.QueueFull:
                logger.warning("Event stream client is not keeping up; dropping %s", channel.value)

        async def _pump() -> None:
            while True:
                await ws.send_json(await queue.get())

        subscriptions = link.emitter.subscribe_all(_forward)
        sender: Optional[asyncio.Task] = None
        try:
            await ws.accept()
            sender = asyncio.create_task(_pump())
            # Inbound frames are ignored; reading surfaces the client's disconnect.
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            return
        finally:
            for subscription in subscriptions:
                subscription.unsubscribe()
            if sender is not None:
                sender.cancel()

    return app


__all__ = ["create_app"]
