"""
audio.py — Hands-free Command Engine · Audio Channel Arbitration
================================================================
One microphone, one speaker.  While speech synthesis is playing, the
speech-to-text input must be off, otherwise it transcribes the engine's own
voice.  This module owns that mutual exclusion.

Phases
──────
    IDLE       voice control off, or given up after faults
    LISTENING  input requested / running
    PAUSED     input cut; either synthesis is just starting or its echo is settling
    SPEAKING   synthesis in progress, input stopped
    RETRYING   waiting out the backoff after a transient input fault

Synthesis start cuts the input synchronously (LISTENING → PAUSED → SPEAKING in
one call).  Synthesis end moves to PAUSED and resumes LISTENING only after the
settle window.  Invariant: LISTENING is never the phase while synthesis is
active.

Faults
──────
  • no_speech                      → normal timeout, free restart
  • network / audio_capture        → retry after backoff, bounded budget
  • permission_denied / aborted /
    service_disabled               → IDLE, reported once, needs re-enable
  • input ends by itself           → immediate restart, costs one retry
The budget resets on every confirmed start.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from .config import AudioConfig
from .errors import InputFaultError
from .models import AudioPhase, Availability, InputFault
from .scheduling import Scheduler, TimerHandle, cancel_timer

log = logging.getLogger("handsfree.audio")


@dataclass
class AudioArbitrationState:
    phase: AudioPhase = AudioPhase.IDLE
    retries: int = 0
    synthesis_active: bool = False
    availability: Availability = Availability.AVAILABLE
    last_fault: Optional[InputFault] = None


class AudioArbiter:
    """Mic/speaker arbitration state machine.

    `start_input` / `stop_input` only *request* a change; the microphone
    reports back through `input_started`, `input_ended` and `input_error`.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        start_input: Callable[[], None],
        stop_input: Callable[[], None],
        config: Optional[AudioConfig] = None,
        on_status: Optional[Callable[[Availability], None]] = None,
    ):
        self._scheduler = scheduler
        self._start = start_input
        self._stop = stop_input
        self._config = config or AudioConfig()
        self._on_status = on_status

        self.state = AudioArbitrationState()
        self.transitions: deque[tuple[str, str, str]] = deque(maxlen=64)

        self._enabled = False
        self._input_on = False          # we asked for input and have not asked it to stop
        self._pending_stops = 0         # stops we requested whose end has not arrived yet
        self._no_speech_pending = False
        self._resume_timer: Optional[TimerHandle] = None
        self._retry_timer: Optional[TimerHandle] = None

    # -----------------------------------------------------------------------
    # Read-only views
    # -----------------------------------------------------------------------

    @property
    def phase(self) -> AudioPhase:
        return self.state.phase

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def listening(self) -> bool:
        return self.state.phase is AudioPhase.LISTENING

    @property
    def speaking(self) -> bool:
        return self.state.synthesis_active

    @property
    def input_requested(self) -> bool:
        return self._input_on

    @property
    def accepting_transcripts(self) -> bool:
        """Transcripts only count while we are genuinely listening."""
        return self._enabled and self.listening and not self.state.synthesis_active

    # -----------------------------------------------------------------------
    # Voice control toggle
    # -----------------------------------------------------------------------

    def enable(self) -> None:
        if self._enabled and self.state.phase is not AudioPhase.IDLE:
            return
        self._enabled = True
        self._cancel_timers()
        self.state.retries = 0
        self.state.last_fault = None
        self._no_speech_pending = False
        self._report(Availability.AVAILABLE)

        if self.state.synthesis_active:
            self._set_phase(AudioPhase.SPEAKING, "enabled_during_synthesis")
        else:
            self._start_input("enabled")

    def disable(self) -> None:
        self._enabled = False
        self._cancel_timers()
        self._stop_input()
        self.state.retries = 0
        self._no_speech_pending = False
        self._set_phase(AudioPhase.IDLE, "disabled")

    # -----------------------------------------------------------------------
    # Speech synthesis callbacks
    # -----------------------------------------------------------------------

    def synthesis_started(self) -> None:
        self.state.synthesis_active = True
        if not self._enabled or self.state.phase is AudioPhase.IDLE:
            return

        self._cancel_timers()
        if self.state.phase is AudioPhase.LISTENING:
            # Cut input before any audio goes out.
            self._stop_input()
            self._set_phase(AudioPhase.PAUSED, "synthesis_started")
        self._set_phase(AudioPhase.SPEAKING, "synthesis_started")

    def synthesis_ended(self) -> None:
        self.state.synthesis_active = False
        if self.state.phase is not AudioPhase.SPEAKING:
            return

        self._set_phase(AudioPhase.PAUSED, "synthesis_ended")
        self._resume_timer = self._scheduler.call_later(
            self._config.resume_delay_sec, self._on_resume, name="audio_resume",
        )

    # -----------------------------------------------------------------------
    # Microphone feedback
    # -----------------------------------------------------------------------

    def input_started(self) -> None:
        if not (self._input_on and self.listening):
            # Confirmation for a start we already took back; the queued stop follows it.
            log.debug("event=input_started_stale phase=%s", self.state.phase.value)
            return
        if self.state.retries:
            log.info("event=input_recovered after_retries=%d", self.state.retries)
        self.state.retries = 0
        self._report(Availability.AVAILABLE)

    def input_ended(self) -> None:
        if self._pending_stops:
            self._pending_stops -= 1
            return
        if not self.listening:
            return

        self._input_on = False
        if self._no_speech_pending:
            self._no_speech_pending = False
            self._start_input("no_speech_restart")
            return

        if self._consume_retry("input_ended"):
            self._start_input("auto_restart")

    def input_error(self, fault: InputFault | str) -> None:
        fault = InputFault(fault)
        self.state.last_fault = fault

        if fault is InputFault.NO_SPEECH:
            if self.listening:
                self._no_speech_pending = True
                log.debug("event=input_no_speech")
            return

        if fault is InputFault.ABORTED and (self._pending_stops or not self.listening):
            log.debug("event=input_abort_expected")
            return

        if not self._enabled:
            return

        if not fault.retryable:
            log.warning("event=input_fault_fatal fault=%s", fault.value)
            self._cancel_timers()
            self._input_on = False
            self._set_phase(AudioPhase.IDLE, f"fault_{fault.value}")
            self._report(Availability.BLOCKED)
            return

        if not self.listening:
            log.debug("event=input_fault_ignored fault=%s phase=%s", fault.value, self.state.phase.value)
            return

        self._input_on = False
        log.info("event=input_fault_transient fault=%s retries=%d", fault.value, self.state.retries)
        if self._consume_retry(f"fault_{fault.value}"):
            self._set_phase(AudioPhase.RETRYING, f"fault_{fault.value}")
            self._retry_timer = self._scheduler.call_later(
                self._config.retry_backoff_sec, self._on_retry, name="audio_retry",
            )

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _start_input(self, reason: str) -> None:
        self._input_on = True
        self._set_phase(AudioPhase.LISTENING, reason)
        try:
            self._start()
        except InputFaultError as exc:
            self.input_error(exc.fault)
        except Exception as exc:
            log.warning("event=input_start_failed error=%s", exc)
            self.input_error(InputFault.AUDIO_CAPTURE)

    def _stop_input(self) -> None:
        if not self._input_on:
            return
        self._input_on = False
        self._pending_stops += 1
        self._stop()

    def _consume_retry(self, reason: str) -> bool:
        """Spend one retry.  Returns False (and gives up) when the budget is gone."""
        self.state.retries += 1
        if self.state.retries >= self._config.max_retries:
            log.warning(
                "event=voice_unavailable reason=%s retries=%d/%d",
                reason, self.state.retries, self._config.max_retries,
            )
            self._cancel_timers()
            self._set_phase(AudioPhase.IDLE, "retry_budget_exhausted")
            self._report(Availability.UNAVAILABLE)
            return False
        return True

    def _on_resume(self) -> None:
        self._resume_timer = None
        if self._enabled and self.state.phase is AudioPhase.PAUSED and not self.state.synthesis_active:
            self._start_input("settled")

    def _on_retry(self) -> None:
        self._retry_timer = None
        if self._enabled and self.state.phase is AudioPhase.RETRYING:
            self._start_input("retry")

    def _cancel_timers(self) -> None:
        cancel_timer(self._resume_timer)
        cancel_timer(self._retry_timer)
        self._resume_timer = None
        self._retry_timer = None

    def _set_phase(self, new: AudioPhase, reason: str) -> None:
        prev = self.state.phase
        if prev is new:
            return
        self.state.phase = new
        self.transitions.append((prev.value, new.value, reason))
        log.info("event=audio_phase from=%s to=%s reason=%s", prev.value, new.value, reason)

    def _report(self, availability: Availability) -> None:
        if self.state.availability is availability:
            return
        self.state.availability = availability
        log.info("event=voice_status status=%s", availability.value)
        if self._on_status is not None:
            self._on_status(availability)
