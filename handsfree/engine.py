"""
engine.py — Hands-free Command Engine · Serialized Event Loop
=============================================================
Wires classifier, stabilizer, normalizer, audio arbiter and dispatcher
together behind the inbound/outbound interfaces the application sees.

Concurrency model
-----------------
Every inbound call (pose ticks at ~30 Hz, transcripts, synthesis callbacks,
settings changes, device feedback, timer expiries) is turned into an event on
one asyncio.Queue and handled by a single consumer task.  Handlers never
await, so no two of them ever interleave.  Inbound calls may come from any
thread.

Camera and microphone start/stop calls may block, so they run off the
serialized path on a per-device single-worker executor (which keeps each
device's calls in order).  Failures come back as queued events.

Inbound                      Outbound (ActionLayer)
  on_hand_frame                dispatch_command(cmd, source)
  on_transcript                start_capture / stop_capture
  on_synthesis_start / _end    start_listening / stop_listening
  set_context                  on_status(modality, availability)  [optional]
  set_voice_enabled
  set_gesture_enabled
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol, Sequence, Union

from pydantic import BaseModel

from .audio import AudioArbiter
from .classifier import classify_hands
from .config import EngineConfig
from .dispatcher import CommandDispatcher
from .errors import InputFaultError
from .models import (
    AppContext,
    Availability,
    CommandSource,
    GestureLabel,
    HandFrame,
    InputFault,
    Transcript,
)
from .normalizer import normalize
from .scheduling import LoopScheduler
from .stabilizer import GestureStabilizer

log = logging.getLogger("handsfree.engine")

HandsInput = Union[HandFrame, Sequence[HandFrame], None]


class ActionLayer(Protocol):
    """What the engine drives.  `on_status(modality, availability)` is optional."""

    def dispatch_command(self, command: str, source: CommandSource) -> None: ...
    def start_capture(self) -> None: ...
    def stop_capture(self) -> None: ...
    def start_listening(self) -> None: ...
    def stop_listening(self) -> None: ...


class EngineStatus(BaseModel):
    context: AppContext
    voice_enabled: bool
    gesture_enabled: bool
    audio_phase: str
    retries: int
    synthesis_active: bool
    voice_status: Availability
    gesture_status: Availability
    gesture_state: str
    last_gesture_label: Optional[GestureLabel] = None
    last_gesture_command: Optional[str] = None
    last_voice_command: Optional[str] = None
    queue_depth: int = 0
    audio_transitions: list[tuple[str, str, str]] = []


# ---------------------------------------------------------------------------
# Device I/O off the serialized path
# ---------------------------------------------------------------------------

class DeviceChannel:
    """Runs one device's lifecycle calls in order, away from the event loop's handlers."""

    def __init__(self, name: str, on_failure: Callable[[str, Exception], None]):
        self.name = name
        self._on_failure = on_failure
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"handsfree-{name}")
        self._lock: Optional[asyncio.Lock] = None
        self._tasks: set[asyncio.Task] = set()

    def request(self, op: str, fn: Callable[[], Any]) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        task = asyncio.create_task(self._run(op, fn), name=f"{self.name}_{op}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, op: str, fn: Callable[[], Any]) -> None:
        async with self._lock:
            log.debug("event=device_call device=%s op=%s", self.name, op)
            try:
                if inspect.iscoroutinefunction(fn):
                    await fn()
                else:
                    await asyncio.get_running_loop().run_in_executor(self._executor, fn)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("event=device_call_failed device=%s op=%s error=%s", self.name, op, exc)
                self._on_failure(op, exc)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._executor.shutdown(wait=False)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class CommandEngine:
    def __init__(
        self,
        actions: ActionLayer,
        config: Optional[EngineConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or EngineConfig()
        self._actions = actions
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

        scheduler = LoopScheduler(submit=self._submit_timer)
        self._camera = DeviceChannel("camera", self._on_camera_failure)
        self._mic = DeviceChannel("microphone", self._on_mic_failure)

        self.stabilizer = GestureStabilizer(scheduler, self.config.stabilizer)
        self.arbiter = AudioArbiter(
            scheduler,
            start_input=lambda: self._mic.request("start_listening", actions.start_listening),
            stop_input=lambda: self._mic.request("stop_listening", actions.stop_listening),
            config=self.config.audio,
            on_status=lambda status: self._report_status("voice", status),
        )
        self.dispatcher = CommandDispatcher(actions.dispatch_command, self.config.dispatcher, clock=clock)

        self._context = self.config.initial_context
        self._voice_enabled = False
        self._gesture_enabled = False
        self._gesture_status = Availability.AVAILABLE
        self._last_label: Optional[GestureLabel] = None
        self._last_transcript_seq = 0

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="handsfree_event_loop")
        log.info(
            "event=engine_start context=%s voice=%s gesture=%s",
            self._context.value, self.config.voice_enabled, self.config.gesture_enabled,
        )
        if self.config.voice_enabled:
            self.set_voice_enabled(True)
        if self.config.gesture_enabled:
            self.set_gesture_enabled(True)

    async def stop(self) -> None:
        if self._worker is None:
            return
        self.set_voice_enabled(False)
        self.set_gesture_enabled(False)
        await self.drain()

        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        self._camera.close()
        self._mic.close()
        log.info("event=engine_stopped")

    async def drain(self) -> None:
        """Wait until every queued event and device call has been handled."""
        while True:
            await self._queue.join()
            await self._camera.wait_idle()
            await self._mic.wait_idle()
            if self._queue.empty():
                return

    @property
    def running(self) -> bool:
        return self._worker is not None

    # -----------------------------------------------------------------------
    # Inbound interface (safe from any thread)
    # -----------------------------------------------------------------------

    def on_hand_frame(self, hands: HandsInput) -> None:
        if hands is None:
            frames: tuple[HandFrame, ...] = ()
        elif isinstance(hands, HandFrame):
            frames = (hands,)
        else:
            frames = tuple(hands)
        self._post(self._handle_hands, frames)

    def on_transcript(self, text: str) -> None:
        self._post(self._handle_transcript, Transcript(text))

    def on_synthesis_start(self) -> None:
        self._post(self.arbiter.synthesis_started)

    def on_synthesis_end(self) -> None:
        self._post(self.arbiter.synthesis_ended)

    def set_context(self, context: AppContext | str) -> None:
        self._post(self._handle_context, AppContext(context))

    def set_voice_enabled(self, enabled: bool) -> None:
        self._post(self._handle_voice_enabled, bool(enabled))

    def set_gesture_enabled(self, enabled: bool) -> None:
        self._post(self._handle_gesture_enabled, bool(enabled))

    # Device feedback

    def on_listening_started(self) -> None:
        self._post(self.arbiter.input_started)

    def on_listening_ended(self) -> None:
        self._post(self.arbiter.input_ended)

    def on_listening_error(self, fault: InputFault | str) -> None:
        self._post(self.arbiter.input_error, InputFault(fault))

    def on_capture_error(self, reason: str = "capture_failed") -> None:
        self._post(self._handle_capture_failed, reason)

    # -----------------------------------------------------------------------
    # Snapshot
    # -----------------------------------------------------------------------

    def status(self) -> EngineStatus:
        st = self.arbiter.state
        return EngineStatus(
            context=self._context,
            voice_enabled=self._voice_enabled,
            gesture_enabled=self._gesture_enabled,
            audio_phase=st.phase.value,
            retries=st.retries,
            synthesis_active=st.synthesis_active,
            voice_status=st.availability,
            gesture_status=self._gesture_status,
            gesture_state=self.stabilizer.state,
            last_gesture_label=self._last_label,
            last_gesture_command=self.dispatcher.last_command[CommandSource.GESTURE],
            last_voice_command=self.dispatcher.last_command[CommandSource.VOICE],
            queue_depth=self._queue.qsize() if self._queue is not None else 0,
            audio_transitions=list(self.arbiter.transitions),
        )

    # -----------------------------------------------------------------------
    # Serialized path
    # -----------------------------------------------------------------------

    def _post(self, handler: Callable[..., None], *args: Any) -> None:
        if self._loop is None or self._queue is None:
            raise RuntimeError("engine is not started")
        item = (handler, args)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(item)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def _submit_timer(self, fire: Callable[[], None]) -> None:
        self._post(fire)

    async def _run(self) -> None:
        while True:
            handler, args = await self._queue.get()
            try:
                handler(*args)
            except Exception as exc:
                log.error("event=handler_error handler=%s error=%s",
                          getattr(handler, "__name__", handler), exc, exc_info=True)
            finally:
                self._queue.task_done()

    # -- gesture path --------------------------------------------------------

    def _handle_hands(self, hands: tuple[HandFrame, ...]) -> None:
        if not self._gesture_enabled or self._gesture_status is not Availability.AVAILABLE:
            return
        if not hands:
            self.stabilizer.observe_absent()
            return

        t0 = time.perf_counter()
        label = classify_hands(hands, self.config.classifier)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        if elapsed_ms > self.config.classifier.frame_budget_ms:
            log.warning("event=classify_slow elapsed_ms=%.1f budget_ms=%.1f",
                        elapsed_ms, self.config.classifier.frame_budget_ms)
        if len(hands) > 1:
            log.debug("event=extra_hands_ignored count=%d", len(hands) - 1)

        self._last_label = label
        stable = self.stabilizer.observe(label)
        if stable is not None:
            self.dispatcher.submit_gesture(stable, self._context)

    def _handle_gesture_enabled(self, enabled: bool) -> None:
        if enabled == self._gesture_enabled and (not enabled or self._gesture_status is Availability.AVAILABLE):
            return
        self.stabilizer.reset()
        self._gesture_enabled = enabled
        if enabled:
            self._report_status("gesture", Availability.AVAILABLE)
            self._camera.request("start_capture", self._actions.start_capture)
            log.info("event=gesture_enabled")
        else:
            self._camera.request("stop_capture", self._actions.stop_capture)
            log.info("event=gesture_disabled")

    def _handle_capture_failed(self, reason: str) -> None:
        if not self._gesture_enabled:
            return
        log.warning("event=gesture_unavailable reason=%s", reason)
        self.stabilizer.reset()
        self._report_status("gesture", Availability.UNAVAILABLE)

    def _on_camera_failure(self, op: str, exc: Exception) -> None:
        if op == "start_capture":
            self._post(self._handle_capture_failed, f"{type(exc).__name__}: {exc}")

    # -- voice path ----------------------------------------------------------

    def _handle_transcript(self, transcript: Transcript) -> None:
        if not self._voice_enabled:
            return
        if transcript.seq <= self._last_transcript_seq:
            log.info("event=transcript_out_of_order seq=%d last=%d", transcript.seq, self._last_transcript_seq)
            return
        self._last_transcript_seq = transcript.seq
        if not self.arbiter.accepting_transcripts:
            log.info("event=transcript_dropped phase=%s text=%.40s", self.arbiter.phase.value, transcript.text)
            return

        command = normalize(transcript.text)
        self.dispatcher.submit_voice(command)

    def _handle_voice_enabled(self, enabled: bool) -> None:
        self._voice_enabled = enabled
        if enabled:
            self.arbiter.enable()
        else:
            self.arbiter.disable()

    def _on_mic_failure(self, op: str, exc: Exception) -> None:
        if op != "start_listening":
            return
        fault = exc.fault if isinstance(exc, InputFaultError) else InputFault.AUDIO_CAPTURE
        self._post(self.arbiter.input_error, fault)

    # -- shared --------------------------------------------------------------

    def _handle_context(self, context: AppContext) -> None:
        if context is not self._context:
            log.info("event=context_change from=%s to=%s", self._context.value, context.value)
        self._context = context

    def _report_status(self, modality: str, status: Availability) -> None:
        if modality == "gesture":
            if self._gesture_status is status:
                return
            self._gesture_status = status
        notify = getattr(self._actions, "on_status", None)
        if notify is None:
            return
        try:
            notify(modality, status)
        except Exception as exc:
            log.error("event=status_callback_error modality=%s error=%s", modality, exc, exc_info=True)
