"""HTTP and WebSocket surface (FastAPI).

Routes::

    GET  /api/last                      {"devices": [DeviceState...]}
    POST /api/control                   {"ok", "topic", "payload"}
    POST /api/config                    {"ok", "commands": [...]}
    GET  /api/rules                     {"rules": [RuleSet...]}
    GET  /api/devices/{id}/history      {"deviceId", "readings": [...]}
    GET  /api/health                    bridge heartbeat payload
    GET  /debug                         live event log page
    WS   /ws                            real-time protocol

WebSocket frames are JSON objects ``{"event": name, "data": ...}``.
Client requests may carry an ``id``; the reply is sent to that client
only as ``{"event": "ack", "id": id, "data": {...}}``.

Request bodies and client frames are parsed as strict JSON
(:func:`~farmhub._codec.parse_json`); anything else is a 400 or an
ignored frame.  Browser dashboards on other origins are admitted per
``settings.http.cors_origins``.

The application's lifespan owns the :class:`~farmhub._bridge.Bridge`:
it is started before the first request and stopped on shutdown.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

from farmhub._bridge import Bridge
from farmhub._clock import ClockPort
from farmhub._codec import parse_json
from farmhub._errors import CommandTimeoutError, PublishFailedError, error_ack
from farmhub._mqtt import MqttPort
from farmhub._settings import Settings

logger = logging.getLogger(__name__)

_DEBUG_PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>farmhub debug</title></head>
<body>
<h3>farmhub live events</h3>
<pre id="log"></pre>
<script>
  const log = document.getElementById("log");
  const proto = location.protocol === "https:" ? "wss" : "ws";
  const ws = new WebSocket(`${proto}://${location.host}/ws`);
  const line = (text) => { log.textContent = text + "\\n" + log.textContent; };
  ws.onopen = () => line("connected");
  ws.onclose = () => line("disconnected");
  ws.onmessage = (msg) => {
    const frame = JSON.parse(msg.data);
    line(`${new Date().toISOString()} ${frame.event} ${JSON.stringify(frame.data)}`);
  };
</script>
</body>
</html>
"""


class WebSocketSubscriber:
    """Adapts a FastAPI :class:`WebSocket` to the fan-out ``Subscriber``."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self.closed = False

    async def send(self, message: dict[str, object]) -> None:
        await self._websocket.send_json(message)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._websocket.close()


def create_app(
    settings: Settings | None = None,
    *,
    mqtt: MqttPort | None = None,
    clock: ClockPort | None = None,
    version: str = "0.0.0",
) -> FastAPI:
    """Build the FastAPI application around a new :class:`Bridge`.

    Args:
        settings: Application settings.  Read from the environment
            when omitted.
        mqtt: Override the MQTT adapter (tests).
        clock: Override the clock (tests).
        version: Reported by ``/api/health`` and the heartbeat.
    """
    if settings is None:
        settings = Settings()
    bridge = Bridge(settings, mqtt=mqtt, clock=clock, version=version)

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await bridge.start()
        try:
            yield
        finally:
            await bridge.stop()

    api = FastAPI(title="farmhub", version=version, lifespan=lifespan)
    api.state.bridge = bridge
    api.add_middleware(
        CORSMiddleware,
        allow_origins=settings.http.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- REST ---------------------------------------------------------------

    @api.get("/api/last")
    async def last() -> dict[str, Any]:
        return {"devices": [s.to_dict() for s in bridge.registry.snapshot()]}

    @api.post("/api/control")
    async def control(request: Request) -> JSONResponse:
        body = await _read_device_request(request)
        if body is None:
            return _device_id_required()
        command = {k: v for k, v in body.items() if k != "deviceId"}
        try:
            ack = await bridge.router.send(str(body["deviceId"]), command)
        except PublishFailedError as exc:
            return JSONResponse(error_ack(exc), status_code=502)
        except CommandTimeoutError as exc:
            return JSONResponse(error_ack(exc), status_code=504)
        return JSONResponse(ack.to_dict())

    @api.post("/api/config")
    async def config(request: Request) -> JSONResponse:
        body = await _read_device_request(request)
        if body is None:
            return _device_id_required()
        thresholds = body.get("thresholds")
        mode = body.get("mode")
        if thresholds is not None and not isinstance(thresholds, dict):
            return JSONResponse(
                {"ok": False, "error": "thresholds must be an object"},
                status_code=400,
            )
        if mode is not None and not isinstance(mode, str):
            return JSONResponse(
                {"ok": False, "error": "mode must be a string"},
                status_code=400,
            )
        try:
            acks = await bridge.router.set_config(
                str(body["deviceId"]), thresholds=thresholds, mode=mode
            )
        except PublishFailedError as exc:
            return JSONResponse(error_ack(exc), status_code=502)
        except CommandTimeoutError as exc:
            return JSONResponse(error_ack(exc), status_code=504)
        return JSONResponse({"ok": True, "commands": [a.to_dict() for a in acks]})

    @api.get("/api/rules")
    async def rules() -> dict[str, Any]:
        return {"rules": [r.to_dict() for r in bridge.rules.snapshot()]}

    @api.get("/api/devices/{device_id}/history")
    async def history(device_id: str) -> JSONResponse:
        if device_id not in bridge.registry:
            return JSONResponse(
                {"ok": False, "error": f"Unknown device '{device_id}'"},
                status_code=404,
            )
        readings = [r.to_dict() for r in bridge.registry.history(device_id)]
        return JSONResponse({"deviceId": device_id, "readings": readings})

    @api.get("/api/health")
    async def health() -> dict[str, object]:
        return bridge.heartbeat().to_dict()

    @api.get("/debug", response_class=HTMLResponse)
    async def debug() -> HTMLResponse:
        return HTMLResponse(content=_DEBUG_PAGE)

    # -- WebSocket ----------------------------------------------------------

    @api.websocket("/ws")
    async def realtime(websocket: WebSocket) -> None:
        await websocket.accept()
        subscriber = WebSocketSubscriber(websocket)
        requests: set[asyncio.Task[None]] = set()
        bridge.hub.join(subscriber)
        try:
            while True:
                text = await websocket.receive_text()
                task = asyncio.create_task(_handle_frame(bridge, subscriber, text))
                requests.add(task)
                task.add_done_callback(requests.discard)
        except WebSocketDisconnect:
            logger.debug("WebSocket client disconnected")
        except RuntimeError:
            # receive after the hub closed the socket
            if not subscriber.closed:
                raise
        finally:
            for task in list(requests):
                task.cancel()
            await bridge.hub.leave(subscriber)

    return api


def _device_id_required() -> JSONResponse:
    return JSONResponse({"ok": False, "error": "deviceId required"}, status_code=400)


async def _read_device_request(request: Request) -> dict[str, Any] | None:
    """Parse a JSON object body naming a ``deviceId``, or return ``None``."""
    try:
        body = parse_json(await request.body())
    except ValueError:
        return None
    if not isinstance(body, dict) or not body.get("deviceId"):
        return None
    return body


async def _handle_frame(bridge: Bridge, subscriber: WebSocketSubscriber, text: str) -> None:
    """Dispatch one client frame to the fan-out hub."""
    try:
        frame = parse_json(text)
    except ValueError:
        logger.warning("Ignoring WebSocket frame that is not strict JSON")
        return
    if not isinstance(frame, dict):
        logger.warning("Ignoring WebSocket frame that is not an object")
        return

    event = frame.get("event")
    request_id = frame.get("id")
    data = frame.get("data")
    if event == "control:send":
        await bridge.hub.on_command_request(subscriber, data, request_id=request_id)
    elif event == "rules:save":
        await bridge.hub.on_rules_save(subscriber, data, request_id=request_id)
    else:
        logger.warning("Unknown WebSocket event %r", event)
        if request_id is not None:
            bridge.hub.reply(
                subscriber,
                {
                    "event": "ack",
                    "id": request_id,
                    "data": {"ok": False, "error": f"Unknown event {event!r}"},
                },
            )
