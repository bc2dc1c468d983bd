from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import pytest

from handsfree.models import HandFrame

# ---------------------------------------------------------------------------
# Manual scheduler: timers only fire when a test advances time
# ---------------------------------------------------------------------------


@dataclass
class FakeTimer:
    when: float
    callback: Callable[[], None]
    name: str = ""
    cancelled: bool = False
    fired: bool = False

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> None:
        if not self.fired:
            self.cancelled = True


class FakeScheduler:
    def __init__(self) -> None:
        self.now = 0.0
        self.timers: list[FakeTimer] = []

    def call_later(self, delay, callback, *, name=""):
        timer = FakeTimer(self.now + delay, callback, name)
        self.timers.append(timer)
        return timer

    def clock(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self.timers if t.active and t.when <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self.now = max(self.now, timer.when)
            timer.fired = True
            timer.callback()
        self.now = target

    def pending(self, name: str | None = None) -> list[FakeTimer]:
        return [t for t in self.timers if t.active and (name is None or t.name == name)]


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


# ---------------------------------------------------------------------------
# Synthetic hands
#
# Coordinates relative to the wrist, image space (smaller y is up).  MCP row
# at y=-50.  Finger poses:
#   up      tip above PIP above MCP
#   curled  tip below PIP and MCP (tight fist)
#   loose   tip below PIP but above MCP (neither extended nor truly closed)
#   side    index only: extended but aimed sideways, not upward enough to point
# Thumb poses: up, folded (tucked across the palm), down.
# ---------------------------------------------------------------------------

_FINGER_X = {"index": -20.0, "middle": 0.0, "ring": 20.0, "pinky": 40.0}

_FINGER_POSES = {
    "up":     [(0, -80), (0, -100), (0, -120)],
    "curled": [(0, -60), (0, -45), (0, -35)],
    "loose":  [(0, -60), (0, -62), (0, -55)],
    "side":   [(-25, -51), (-50, -51.5), (-80, -52)],
}

_THUMB_POSES = {
    "up":     [(-30, -10), (-40, -25), (-45, -50), (-50, -75)],
    "folded": [(-30, -10), (-40, -25), (-30, -30), (-20, -28)],
    "down":   [(-30, -10), (-40, -25), (-42, -5), (-44, 15)],
}


def make_hand(
    thumb: str = "folded",
    index: str = "curled",
    middle: str = "curled",
    ring: str = "curled",
    pinky: str = "curled",
    *,
    scale: float = 1.0,
    origin: tuple[float, float] = (300.0, 300.0),
) -> HandFrame:
    ox, oy = origin
    rel: list[tuple[float, float]] = [(0.0, 0.0)]
    rel.extend(_THUMB_POSES[thumb])
    for name, pose in (("index", index), ("middle", middle), ("ring", ring), ("pinky", pinky)):
        x = _FINGER_X[name]
        rel.append((x, -50.0))
        rel.extend((x + dx, dy) for dx, dy in _FINGER_POSES[pose])
    return HandFrame.from_points([(ox + x * scale, oy + y * scale) for x, y in rel])


HANDS = {
    "open_palm":     dict(thumb="up", index="up", middle="up", ring="up", pinky="up"),
    "four_fingers":  dict(index="up", middle="up", ring="up", pinky="up"),
    "three_fingers": dict(index="up", middle="up", ring="up"),
    "two_fingers":   dict(index="up", middle="up"),
    "one_finger":    dict(index="side"),
    "pointing_up":   dict(index="up"),
    "fist":          dict(),
    "thumbs_up":     dict(thumb="up"),
    "thumbs_down":   dict(thumb="down", index="loose", middle="loose", ring="loose", pinky="loose"),
    "rock":          dict(index="up", pinky="up"),
    "ok":            dict(index="loose"),
}


def hand(name: str, **overrides) -> HandFrame:
    return make_hand(**{**HANDS[name], **overrides})


def hand_points(name: str) -> list[dict]:
    """JSON-ready landmark list for HTTP tests."""
    return [{"x": lm.x, "y": lm.y} for lm in hand(name).landmarks]
