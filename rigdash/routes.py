from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .rig import (
    AlreadyConnectingError,
    CommandError,
    CommandTimeout,
    NotConnectedError,
    RigConnectionError,
    RigError,
)
from .rig.session import RigSession

router = APIRouter(default_response_class=ORJSONResponse)


class ConnectRequest(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)


class FrequencyRequest(BaseModel):
    frequency_hz: float = Field(gt=0)


class ModeRequest(BaseModel):
    mode: str
    bandwidth_hz: Optional[float] = Field(default=None, gt=0)


class PowerRequest(BaseModel):
    percent: float = Field(ge=0, le=100)


class PttRequest(BaseModel):
    enabled: bool


class PollingRequest(BaseModel):
    enabled: bool = True
    interval_ms: Optional[int] = Field(default=None, ge=50)


class TuneRequest(BaseModel):
    duration_ms: int = Field(default=1200, ge=100, le=10000)


def _session(request: Request) -> RigSession:
    return request.app.state.session


def _error(e: Exception) -> ORJSONResponse:
    if isinstance(e, (NotConnectedError, AlreadyConnectingError)):
        status = 409
    elif isinstance(e, CommandTimeout):
        status = 504
    elif isinstance(e, (RigConnectionError, CommandError)):
        status = 502
    elif isinstance(e, ValueError):
        status = 422
    else:
        status = 500
    return ORJSONResponse({"status": "error", "error": str(e)}, status_code=status)


def _ok(session: RigSession, **extra) -> dict:
    return {"status": "ok", "lifecycle": session.lifecycle.value, "state": session.get_state().to_dict(), **extra}


@router.get("/api/health")
async def health(request: Request):
    return {"name": "rigdash", "version": __version__, "lifecycle": _session(request).lifecycle.value}


@router.get("/api/config")
async def get_config(request: Request):
    return request.app.state.config


@router.get("/api/radio/state")
async def radio_state(request: Request):
    return _session(request).status()


@router.get("/api/radio/capabilities")
async def radio_capabilities(request: Request):
    caps = _session(request).get_capabilities()
    if caps is None:
        return _error(NotConnectedError("rig not connected"))
    return {"status": "ok", "capabilities": caps.to_dict()}


@router.post("/api/radio/connect")
async def radio_connect(request: Request, payload: Optional[ConnectRequest] = None):
    session = _session(request)
    rig_cfg = request.app.state.config.rig
    payload = payload or ConnectRequest()
    host = payload.host or rig_cfg.host
    port = payload.port or rig_cfg.port
    try:
        await session.connect(host, port)
    except RigError as e:
        return _error(e)
    return _ok(session)


@router.post("/api/radio/disconnect")
async def radio_disconnect(request: Request):
    session = _session(request)
    await session.disconnect()
    return _ok(session)


@router.post("/api/radio/frequency")
async def radio_frequency(request: Request, payload: FrequencyRequest):
    session = _session(request)
    try:
        await session.set_frequency(payload.frequency_hz)
    except (RigError, ValueError) as e:
        return _error(e)
    return _ok(session)


@router.post("/api/radio/mode")
async def radio_mode(request: Request, payload: ModeRequest):
    session = _session(request)
    try:
        await session.set_mode(payload.mode, payload.bandwidth_hz)
    except (RigError, ValueError) as e:
        return _error(e)
    return _ok(session)


@router.post("/api/radio/power")
async def radio_power(request: Request, payload: PowerRequest):
    session = _session(request)
    try:
        await session.set_power(payload.percent)
    except (RigError, ValueError) as e:
        return _error(e)
    return _ok(session)


@router.post("/api/radio/ptt")
async def radio_ptt(request: Request, payload: PttRequest):
    session = _session(request)
    try:
        await session.set_ptt(payload.enabled)
    except (RigError, ValueError) as e:
        return _error(e)
    return _ok(session)


@router.post("/api/radio/tune")
async def radio_tune(request: Request, payload: Optional[TuneRequest] = None):
    session = _session(request)
    payload = payload or TuneRequest()
    try:
        await session.tune(payload.duration_ms)
    except (RigError, ValueError) as e:
        return _error(e)
    return _ok(session)


@router.post("/api/radio/polling")
async def radio_polling(request: Request, payload: PollingRequest):
    session = _session(request)
    try:
        if payload.enabled:
            await session.start_polling(payload.interval_ms)
        else:
            await session.stop_polling()
    except (RigError, ValueError) as e:
        return _error(e)
    return _ok(session, polling=session.is_polling, poll_interval_ms=session.poll_interval_ms)


@router.get("/api/debug")
async def debug_log(request: Request, kind: Optional[str] = None):
    return {"events": request.app.state.debug.snapshot(kind)}


async def _relay(ws: WebSocket, q: "asyncio.Queue") -> None:
    while True:
        event = await q.get()
        await ws.send_json(event.to_dict())


@router.websocket("/ws")
async def ws_endpoint(ws: WebSocket):
    await ws.accept()
    session: RigSession = ws.app.state.session
    with session.events.queue() as q:
        await ws.send_json({"type": "status", **session.status()})
        sender = asyncio.create_task(_relay(ws, q))
        try:
            # Inbound messages are ignored; reading is how a closed socket shows up
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            try:
                await sender
            except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                pass
