"""
dispatcher.py — Hands-free Command Engine · Command Dispatcher
==============================================================
Last stop before the action layer.  Maps stabilized gestures to commands for
the current view, suppresses duplicates, and forwards each surviving command
exactly once.

Suppression is keyed by (source, literal command): a gesture "next" and a
voice "next" may both fire, two voice "next" within the window may not.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .config import DispatcherConfig
from .models import AppContext, CommandSource, GestureLabel
from .normalizer import (
    BACK,
    CHECK_ALL,
    INGREDIENTS,
    NEXT,
    PAUSE,
    RESTART,
    SHOW_STEPS,
    START,
    TIMER,
    minutes_command,
)

log = logging.getLogger("handsfree.dispatcher")

# Same meaning on every view.
_GLOBAL_GESTURES: dict[GestureLabel, str] = {
    GestureLabel.POINTING_UP: TIMER,
    GestureLabel.ROCK:        INGREDIENTS,
    GestureLabel.OPEN_PALM:   SHOW_STEPS,
}

# Timer view: fist toggles the running timer, finger counts pick a duration.
_TIMER_GESTURES: dict[GestureLabel, str] = {
    GestureLabel.FIST:          PAUSE,
    GestureLabel.THUMBS_UP:     START,
    GestureLabel.THUMBS_DOWN:   RESTART,
    GestureLabel.ONE_FINGER:    minutes_command(5),
    GestureLabel.TWO_FINGERS:   minutes_command(10),
    GestureLabel.THREE_FINGERS: minutes_command(15),
    GestureLabel.FOUR_FINGERS:  minutes_command(20),
}

# Everywhere else thumbs navigate steps.
_NAVIGATION_GESTURES: dict[GestureLabel, str] = {
    GestureLabel.THUMBS_UP:   NEXT,
    GestureLabel.THUMBS_DOWN: BACK,
}


def command_for_gesture(label: GestureLabel, context: AppContext) -> Optional[str]:
    """Context-sensitive gesture → command table.  None means "no meaning here"."""
    if label in _GLOBAL_GESTURES:
        return _GLOBAL_GESTURES[label]
    if context is AppContext.TIMER:
        return _TIMER_GESTURES.get(label)
    if label is GestureLabel.OK and context is AppContext.INGREDIENTS:
        return CHECK_ALL
    return _NAVIGATION_GESTURES.get(label)


class CommandDispatcher:
    """Duplicate-suppressing forwarder to the action layer.

    Holds nothing but the send times of recent commands; the application
    context is passed in on every gesture call.
    """

    def __init__(
        self,
        sink: Callable[[str, CommandSource], None],
        config: Optional[DispatcherConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sink = sink
        self._config = config or DispatcherConfig()
        self._clock = clock
        self._last_sent: dict[tuple[CommandSource, str], float] = {}
        self.last_command: dict[CommandSource, Optional[str]] = {s: None for s in CommandSource}

    def submit_gesture(self, label: GestureLabel, context: AppContext) -> Optional[str]:
        command = command_for_gesture(label, context)
        if command is None:
            log.debug("event=gesture_unmapped label=%s context=%s", label.value, context.value)
            return None
        return command if self.submit(command, CommandSource.GESTURE) else None

    def submit_voice(self, command: Optional[str]) -> Optional[str]:
        if not command:
            return None
        return command if self.submit(command, CommandSource.VOICE) else None

    def submit(self, command: str, source: CommandSource) -> bool:
        """Forward `command` unless the same source sent it within the window."""
        now = self._clock()
        self._prune(now)

        key = (source, command)
        last = self._last_sent.get(key)
        if last is not None and now - last < self._config.suppression_window_sec:
            log.info(
                "event=command_suppressed source=%s command=%s since_ms=%.0f",
                source.value, command, (now - last) * 1000.0,
            )
            return False

        self._last_sent[key] = now
        self.last_command[source] = command
        log.info("event=command_dispatched source=%s command=%s", source.value, command)
        try:
            self._sink(command, source)
        except Exception as exc:
            log.error("event=action_layer_error source=%s command=%s error=%s",
                      source.value, command, exc, exc_info=True)
        return True

    def _prune(self, now: float) -> None:
        window = self._config.suppression_window_sec
        stale = [k for k, t in self._last_sent.items() if now - t >= window]
        for k in stale:
            del self._last_sent[k]
