"""
stabilizer.py — Hands-free Command Engine · Gesture Stabilization
=================================================================
Consumes one classifier label per detection tick and decides when a gesture
becomes a command.

    Idle ──label──▶ Holding ──hold_frames reached──▶ Dispatched ──▶ Cooldown ──expiry──▶ Idle

A label is dispatched at most once per cooldown window, even when the
classifier reports it on every tick.  After the cooldown the same gesture may
fire again.  A hand that disappears for longer than the grace period resets
the session, so a reappearing gesture counts as new.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import StabilizerConfig
from .models import GestureLabel
from .scheduling import Scheduler, TimerHandle, cancel_timer

log = logging.getLogger("handsfree.stabilizer")


@dataclass
class GestureSession:
    last_label: Optional[GestureLabel] = None
    hold_count: int = 0
    last_dispatched: Optional[GestureLabel] = None
    cooldown_active: bool = False

    def clear_labels(self) -> None:
        self.last_label = None
        self.hold_count = 0
        self.last_dispatched = None


class GestureStabilizer:
    """Hold-count + cooldown state machine over classifier output.

    Owns its cooldown and absent-hand grace timers; `reset()` cancels both so
    a stale expiry can never touch a newer session.
    """

    def __init__(self, scheduler: Scheduler, config: Optional[StabilizerConfig] = None):
        self._scheduler = scheduler
        self._config = config or StabilizerConfig()
        self.session = GestureSession()
        self._cooldown_timer: Optional[TimerHandle] = None
        self._absent_timer: Optional[TimerHandle] = None

    # -----------------------------------------------------------------------
    # Ticks
    # -----------------------------------------------------------------------

    def observe(self, label: GestureLabel) -> Optional[GestureLabel]:
        """Feed one label from a tick with a hand present.

        Returns the label when it should be dispatched now, else None.
        """
        self._cancel_absent_timer()
        if label is GestureLabel.NONE:
            return None

        s = self.session
        if label != s.last_label:
            s.last_label = label
            s.hold_count = 1
        else:
            s.hold_count += 1

        if s.cooldown_active:
            return None
        if label == s.last_dispatched:
            return None
        if s.hold_count < self._config.hold_frames:
            log.debug("event=gesture_holding label=%s hold=%d", label.value, s.hold_count)
            return None

        s.last_dispatched = label
        self._start_cooldown()
        log.info("event=gesture_stabilized label=%s hold=%d", label.value, s.hold_count)
        return label

    def observe_absent(self) -> None:
        """Feed one tick with no hand in view."""
        s = self.session
        s.hold_count = 0
        if s.last_label is None and s.last_dispatched is None:
            return
        if self._absent_timer is not None and self._absent_timer.active:
            return
        self._absent_timer = self._scheduler.call_later(
            self._config.absent_grace_sec, self._on_absent_expired, name="gesture_absent_grace",
        )

    def reset(self) -> None:
        """Cancel every pending timer and start an empty session."""
        cancel_timer(self._cooldown_timer)
        cancel_timer(self._absent_timer)
        self._cooldown_timer = None
        self._absent_timer = None
        self.session = GestureSession()
        log.debug("event=gesture_session_reset")

    @property
    def state(self) -> str:
        s = self.session
        if s.cooldown_active:
            return "cooldown"
        if s.last_label is None:
            return "idle"
        return "dispatched" if s.last_label == s.last_dispatched else "holding"

    # -----------------------------------------------------------------------
    # Timers
    # -----------------------------------------------------------------------

    def _start_cooldown(self) -> None:
        cancel_timer(self._cooldown_timer)
        self.session.cooldown_active = True
        self._cooldown_timer = self._scheduler.call_later(
            self._config.cooldown_sec, self._on_cooldown_expired, name="gesture_cooldown",
        )

    def _on_cooldown_expired(self) -> None:
        self.session.cooldown_active = False
        self.session.last_dispatched = None
        self._cooldown_timer = None
        log.debug("event=gesture_cooldown_over")

    def _cancel_absent_timer(self) -> None:
        cancel_timer(self._absent_timer)
        self._absent_timer = None

    def _on_absent_expired(self) -> None:
        self._absent_timer = None
        self.session.clear_labels()
        log.info("event=gesture_session_reset reason=hand_absent")
