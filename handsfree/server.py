"""
server.py — Hands-free Command Engine · FastAPI Control Plane
=============================================================
Hosts one CommandEngine for a browser-based recipe viewer.  The browser runs
the pose detector, the camera, speech recognition and speech synthesis; it
posts what it observes here and receives the engine's decisions back over a
WebSocket.

Endpoints
---------
  GET  /health               Service liveness
  GET  /status               Engine snapshot
  GET  /config               Current EngineConfig
  PUT  /config               Deep-merge patch, persist, rebuild the engine
  PUT  /settings             Context / voice / gesture toggles
  POST /frames               One detection tick (0..n hands)
  POST /transcripts          One final transcript
  POST /synthesis/start      Speech synthesis began
  POST /synthesis/end        Speech synthesis finished
  POST /listening/started    Speech input confirmed running
  POST /listening/ended      Speech input stopped
  POST /listening/error      Speech input fault
  POST /capture/error        Camera lost / denied
  POST /classify             Debug: label one frame without side effects
  WS   /ws/events            Commands, device requests, status, log lines

Every mutating endpoint waits for the engine's queue to drain, so the
returned status already reflects the request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .classifier import classify, matching_rules
from .config import EngineConfig, config_path_from_env
from .engine import CommandEngine, EngineStatus
from .models import AppContext, Availability, CommandSource, HandFrame, InputFault, Landmark

load_dotenv()

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"
HISTORY_SIZE = 500
REPLAYED_SOURCES = frozenset({"log"})  # engine outputs are delivered live only

# ---------------------------------------------------------------------------
# WebSocket event broadcaster
# ---------------------------------------------------------------------------

class EventBroadcaster:
    """Fan-out hub for engine events to all connected WebSocket clients."""
    def __init__(self, history_size: int = HISTORY_SIZE) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []  # log records replayed to late joiners
        self._history_size = history_size

    @property
    def history(self) -> list[dict]:
        return list(self._history)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in self._history[-self._history_size:]:
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        if event.get("source") in REPLAYED_SOURCES:
            self._history.append(event)
            if len(self._history) > self._history_size:
                self._history = self._history[-self._history_size:]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                dead.add(ws)
        self._clients -= dead


broadcaster = EventBroadcaster()


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards engine log records to all WS clients."""
    def emit(self, record: logging.LogRecord) -> None:
        event = {
            "source": "log",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        try:
            loop = asyncio.get_running_loop()
            loop.call_soon_threadsafe(
                lambda: loop.create_task(broadcaster.broadcast(event))
            )
        except RuntimeError:
            pass  # no event loop in this thread


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("HANDSFREE_DEBUG") else logging.INFO,
    format=LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger("handsfree.server")

# Attach WS broadcast handler AFTER basicConfig has run; per-frame DEBUG stays local
if not any(isinstance(h, _WsBroadcastHandler) for h in logging.root.handlers):
    _ws_handler = _WsBroadcastHandler(level=logging.INFO)
    _ws_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    logging.root.addHandler(_ws_handler)


# ---------------------------------------------------------------------------
# Action layer: everything the engine decides goes to the browser
# ---------------------------------------------------------------------------

class BroadcastActions:
    """ActionLayer that publishes the engine's outputs as WebSocket events.

    Device calls arrive on executor threads, commands on the loop thread;
    both hop onto the loop before touching the broadcaster.
    """

    def __init__(self, hub: EventBroadcaster, loop: asyncio.AbstractEventLoop):
        self._hub = hub
        self._loop = loop

    def dispatch_command(self, command: str, source: CommandSource) -> None:
        self._emit({"type": "command", "command": command, "via": source.value})

    def start_capture(self) -> None:
        self._emit({"type": "device", "device": "camera", "action": "start"})

    def stop_capture(self) -> None:
        self._emit({"type": "device", "device": "camera", "action": "stop"})

    def start_listening(self) -> None:
        self._emit({"type": "device", "device": "microphone", "action": "start"})

    def stop_listening(self) -> None:
        self._emit({"type": "device", "device": "microphone", "action": "stop"})

    def on_status(self, modality: str, status: Availability) -> None:
        self._emit({"type": "status", "modality": modality, "status": status.value})

    def _emit(self, event: dict) -> None:
        event = {"source": "engine", **event, "ts": time.time()}
        self._loop.call_soon_threadsafe(
            lambda: self._loop.create_task(self._hub.broadcast(event))
        )


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class FramesRequest(BaseModel):
    """One detection tick.  An empty `hands` list means no hand in view."""
    hands: list[list[Landmark]] = []


class TranscriptRequest(BaseModel):
    text: str


class SettingsRequest(BaseModel):
    context:         Optional[str] = None
    voice_enabled:   Optional[bool] = None
    gesture_enabled: Optional[bool] = None


class ListeningErrorRequest(BaseModel):
    fault: str


class CaptureErrorRequest(BaseModel):
    reason: str = "capture_failed"


class ClassifyRequest(BaseModel):
    landmarks: list[Landmark]


class ClassifyResponse(BaseModel):
    label:   str
    matches: list[str]


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

async def _start_engine(app: FastAPI, config: EngineConfig) -> CommandEngine:
    actions = BroadcastActions(app.state.broadcaster, asyncio.get_running_loop())
    engine = CommandEngine(actions, config)
    await engine.start()
    await engine.drain()
    app.state.engine = engine
    app.state.config = config
    return engine


def create_app(config: Optional[EngineConfig] = None, config_path=None,
               hub: Optional[EventBroadcaster] = None) -> FastAPI:
    """Build the control-plane app.  Config defaults to `$HANDSFREE_CONFIG`."""
    if config_path is None:
        config_path = config_path_from_env()
    if config is None:
        config = EngineConfig.load(config_path) if config_path else EngineConfig()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        await _start_engine(app, config)
        log.info("event=server_start context=%s", config.initial_context.value)
        yield
        log.info("event=server_shutdown")
        await app.state.engine.stop()
        log.info("event=server_stopped")

    app = FastAPI(
        title="Hands-free Command Engine",
        version="1.0.0",
        description="Gesture and voice command arbitration for a recipe viewer",
        lifespan=_lifespan,
    )
    app.state.broadcaster = hub or broadcaster
    app.state.config_path = config_path
    app.state.config_lock = asyncio.Lock()

    # Allow file:// and any local origin to reach the API (dev only)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def _engine(request: Request) -> CommandEngine:
    return request.app.state.engine


async def _settled(engine: CommandEngine) -> EngineStatus:
    await engine.drain()
    return engine.status()


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Liveness probe."""
        engine = _engine(request)
        return JSONResponse({"status": "ok", "engine_running": engine.running})

    @app.get("/status", response_model=EngineStatus)
    async def status(request: Request) -> EngineStatus:
        return _engine(request).status()

    @app.get("/config", response_model=EngineConfig)
    async def get_config(request: Request) -> EngineConfig:
        return request.app.state.config

    @app.put("/config", response_model=EngineConfig)
    async def put_config(request: Request, patch: dict[str, Any]) -> EngineConfig:
        """
        Deep-merge `patch` into the running config, e.g.
            {"stabilizer": {"cooldown_sec": 2.0}}
        The engine is rebuilt with the result; a config path persists it.
        """
        state = request.app.state
        async with state.config_lock:
            try:
                new_config = state.config.merge_patch(patch)
            except ValidationError as exc:
                raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False)) from exc

            if state.config_path:
                try:
                    new_config.save(state.config_path)
                except OSError as exc:
                    log.error("event=config_save_failed path=%s error=%s", state.config_path, exc)
                    raise HTTPException(status_code=500, detail="Failed to persist config.") from exc

            await state.engine.stop()
            await _start_engine(request.app, new_config)
            log.info("event=config_applied")
        return new_config

    @app.put("/settings", response_model=EngineStatus)
    async def put_settings(request: Request, body: SettingsRequest) -> EngineStatus:
        engine = _engine(request)
        if body.context is not None:
            try:
                context = AppContext(body.context)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f"Unknown context '{body.context}'.") from exc
            engine.set_context(context)
        if body.voice_enabled is not None:
            engine.set_voice_enabled(body.voice_enabled)
        if body.gesture_enabled is not None:
            engine.set_gesture_enabled(body.gesture_enabled)
        return await _settled(engine)

    @app.post("/frames", response_model=EngineStatus)
    async def post_frames(request: Request, body: FramesRequest) -> EngineStatus:
        engine = _engine(request)
        engine.on_hand_frame([HandFrame(landmarks=tuple(h)) for h in body.hands])
        return await _settled(engine)

    @app.post("/transcripts", response_model=EngineStatus)
    async def post_transcript(request: Request, body: TranscriptRequest) -> EngineStatus:
        engine = _engine(request)
        engine.on_transcript(body.text)
        return await _settled(engine)

    @app.post("/synthesis/start", response_model=EngineStatus)
    async def synthesis_start(request: Request) -> EngineStatus:
        engine = _engine(request)
        engine.on_synthesis_start()
        return await _settled(engine)

    @app.post("/synthesis/end", response_model=EngineStatus)
    async def synthesis_end(request: Request) -> EngineStatus:
        engine = _engine(request)
        engine.on_synthesis_end()
        return await _settled(engine)

    @app.post("/listening/started", response_model=EngineStatus)
    async def listening_started(request: Request) -> EngineStatus:
        engine = _engine(request)
        engine.on_listening_started()
        return await _settled(engine)

    @app.post("/listening/ended", response_model=EngineStatus)
    async def listening_ended(request: Request) -> EngineStatus:
        engine = _engine(request)
        engine.on_listening_ended()
        return await _settled(engine)

    @app.post("/listening/error", response_model=EngineStatus)
    async def listening_error(request: Request, body: ListeningErrorRequest) -> EngineStatus:
        try:
            fault = InputFault(body.fault)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown fault '{body.fault}'.") from exc
        engine = _engine(request)
        engine.on_listening_error(fault)
        return await _settled(engine)

    @app.post("/capture/error", response_model=EngineStatus)
    async def capture_error(request: Request, body: CaptureErrorRequest) -> EngineStatus:
        engine = _engine(request)
        engine.on_capture_error(body.reason)
        return await _settled(engine)

    @app.post("/classify", response_model=ClassifyResponse)
    async def classify_frame(request: Request, body: ClassifyRequest) -> ClassifyResponse:
        """Label one frame with the running thresholds; touches no engine state."""
        frame = HandFrame(landmarks=tuple(body.landmarks))
        cfg = request.app.state.config.classifier
        return ClassifyResponse(
            label=classify(frame, cfg).value,
            matches=[label.value for label in matching_rules(frame, cfg)],
        )

    @app.websocket("/ws/events")
    async def ws_events(ws: WebSocket) -> None:
        """
        Real-time event stream for the browser client.  Log records are
        replayed on connect; engine events are only ever sent live, so a
        reconnecting client never sees a command twice.  Every message is a
        JSON object with a `source` of "engine" or "log":
        {
          "source":   "engine",
          "type":     "command" | "device" | "status",
          "command":  "<command>",  "via": "gesture" | "voice",      # command
          "device":   "camera" | "microphone", "action": "start"|"stop",  # device
          "modality": "voice" | "gesture", "status": "<availability>",    # status
          "ts":       <unix float>
        }
        """
        hub: EventBroadcaster = ws.app.state.broadcaster
        await hub.connect(ws)
        log.info("event=ws_client_connected remote=%s", ws.client)
        try:
            while True:
                # Keep the connection alive; we only send, never receive
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            hub.disconnect(ws)
            log.info("event=ws_client_disconnected remote=%s", ws.client)


app = create_app()
