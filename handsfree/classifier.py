"""
classifier.py — Hands-free Command Engine · Landmark Gesture Classifier
=======================================================================
Pure function from one 21-point hand frame to a GestureLabel.

Rules (strict priority, first match wins):
    1  pointing_up    index only, tip well away from and above the wrist
    2  open_palm      all five fingers extended
    3  one_finger     index only, not pointing
    4  two/three/four_fingers
    5  fist           every finger closed, re-verified against PIP and MCP
    6  thumbs_up      thumb extended, fingers not
    7  thumbs_down    thumb tip clearly below its joints, fingers not
    8  rock           index + pinky, middle and ring not (thumb ignored)
    9  ok             thumb tip near index tip, middle/ring/pinky not
    10 none

Several shapes are geometrically close ("one finger" vs "pointing up"), so
the order itself is part of the contract.  `RULES` keeps it as data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from .config import ClassifierConfig
from .models import (
    INDEX_MCP, INDEX_PIP, INDEX_TIP,
    LANDMARK_COUNT,
    MIDDLE_MCP, MIDDLE_PIP, MIDDLE_TIP,
    PINKY_MCP, PINKY_PIP, PINKY_TIP,
    RING_MCP, RING_PIP, RING_TIP,
    THUMB_IP, THUMB_MCP, THUMB_TIP,
    WRIST,
    GestureLabel,
    HandFrame,
)

log = logging.getLogger("handsfree.classifier")

_DEFAULT_CONFIG = ClassifierConfig()

# (tip, pip, mcp) per non-thumb finger
_FINGER_JOINTS = {
    "index":  (INDEX_TIP, INDEX_PIP, INDEX_MCP),
    "middle": (MIDDLE_TIP, MIDDLE_PIP, MIDDLE_MCP),
    "ring":   (RING_TIP, RING_PIP, RING_MCP),
    "pinky":  (PINKY_TIP, PINKY_PIP, PINKY_MCP),
}


# ---------------------------------------------------------------------------
# Per-frame geometry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HandShape:
    """Everything the rules look at, computed once per frame."""
    pts: np.ndarray            # (21, 2) x/y
    extended: dict             # finger name -> bool, thumb included
    truly_closed: dict         # non-thumb finger name -> bool
    scale: float               # multiplier for distance thresholds

    @property
    def thumb(self) -> bool:
        return self.extended["thumb"]

    def only(self, *names: str) -> bool:
        """True when exactly `names` are extended among index/middle/ring/pinky."""
        return all(self.extended[f] == (f in names) for f in _FINGER_JOINTS)

    def index_vector(self) -> np.ndarray:
        return self.pts[INDEX_TIP] - self.pts[WRIST]


def _dist(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.linalg.norm(a - b))


def hand_size(pts: np.ndarray) -> float:
    return max(1e-6, _dist(pts[WRIST], pts[MIDDLE_MCP]))


def measure(frame: HandFrame, config: ClassifierConfig = _DEFAULT_CONFIG) -> Optional[HandShape]:
    """Compute finger states for `frame`, or None if the frame is unusable."""
    if frame is None or len(frame.landmarks) < LANDMARK_COUNT:
        return None

    pts = np.array([(lm.x, lm.y) for lm in frame.landmarks[:LANDMARK_COUNT]], dtype=np.float64)
    if not np.all(np.isfinite(pts)):
        return None
    y = pts[:, 1]

    extended = {
        name: bool(y[tip] < y[pip] < y[mcp])
        for name, (tip, pip, mcp) in _FINGER_JOINTS.items()
    }
    extended["thumb"] = bool(y[THUMB_TIP] < y[THUMB_IP] < y[THUMB_MCP])

    truly_closed = {
        name: bool(y[tip] > y[pip] and y[tip] > y[mcp])
        for name, (tip, pip, mcp) in _FINGER_JOINTS.items()
    }

    scale = 1.0
    if config.scale_by_hand_size:
        scale = hand_size(pts) / config.reference_hand_size

    return HandShape(pts=pts, extended=extended, truly_closed=truly_closed, scale=scale)


# ---------------------------------------------------------------------------
# Rule predicates
# ---------------------------------------------------------------------------

Predicate = Callable[[HandShape, ClassifierConfig], bool]


def _is_pointing_up(h: HandShape, c: ClassifierConfig) -> bool:
    if not h.only("index"):
        return False
    dx, dy = (float(v) for v in h.index_vector())
    if np.hypot(dx, dy) <= c.pointing_min_distance * h.scale:
        return False
    return dy < -c.pointing_min_rise * h.scale and abs(dy) > abs(dx) * c.pointing_vertical_ratio


def _is_open_palm(h: HandShape, c: ClassifierConfig) -> bool:
    return all(h.extended.values())


def _is_one_finger(h: HandShape, c: ClassifierConfig) -> bool:
    # pointing_up sits above this rule, so anything left here is a count
    return h.only("index")


def _is_two_fingers(h: HandShape, c: ClassifierConfig) -> bool:
    return h.only("index", "middle")


def _is_three_fingers(h: HandShape, c: ClassifierConfig) -> bool:
    return h.only("index", "middle", "ring")


def _is_four_fingers(h: HandShape, c: ClassifierConfig) -> bool:
    return h.only("index", "middle", "ring", "pinky") and not h.thumb


def _is_fist(h: HandShape, c: ClassifierConfig) -> bool:
    return h.only() and not h.thumb and all(h.truly_closed.values())


def _is_thumbs_up(h: HandShape, c: ClassifierConfig) -> bool:
    return h.thumb and h.only()


def _is_thumbs_down(h: HandShape, c: ClassifierConfig) -> bool:
    y = h.pts[:, 1]
    pointing_down = (
        y[THUMB_TIP] > y[THUMB_IP]
        and y[THUMB_TIP] > y[THUMB_MCP]
        and (y[THUMB_TIP] - y[THUMB_MCP]) > c.thumbs_down_margin * h.scale
    )
    return bool(pointing_down) and h.only()


def _is_rock(h: HandShape, c: ClassifierConfig) -> bool:
    e = h.extended
    return e["index"] and e["pinky"] and not e["middle"] and not e["ring"]


def _is_ok(h: HandShape, c: ClassifierConfig) -> bool:
    e = h.extended
    if e["middle"] or e["ring"] or e["pinky"]:
        return False
    return _dist(h.pts[THUMB_TIP], h.pts[INDEX_TIP]) < c.ok_max_distance * h.scale


RULES: tuple[tuple[GestureLabel, Predicate], ...] = (
    (GestureLabel.POINTING_UP,   _is_pointing_up),
    (GestureLabel.OPEN_PALM,     _is_open_palm),
    (GestureLabel.ONE_FINGER,    _is_one_finger),
    (GestureLabel.TWO_FINGERS,   _is_two_fingers),
    (GestureLabel.THREE_FINGERS, _is_three_fingers),
    (GestureLabel.FOUR_FINGERS,  _is_four_fingers),
    (GestureLabel.FIST,          _is_fist),
    (GestureLabel.THUMBS_UP,     _is_thumbs_up),
    (GestureLabel.THUMBS_DOWN,   _is_thumbs_down),
    (GestureLabel.ROCK,          _is_rock),
    (GestureLabel.OK,            _is_ok),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def classify(frame: Optional[HandFrame], config: ClassifierConfig = _DEFAULT_CONFIG) -> GestureLabel:
    """Classify one hand frame.  Never raises; malformed input is ``none``."""
    shape = measure(frame, config)
    if shape is None:
        return GestureLabel.NONE
    for label, predicate in RULES:
        if predicate(shape, config):
            return label
    return GestureLabel.NONE


def matching_rules(frame: HandFrame, config: ClassifierConfig = _DEFAULT_CONFIG) -> list[GestureLabel]:
    """Every rule that matches, in priority order.  Debug aid for overlapping shapes."""
    shape = measure(frame, config)
    if shape is None:
        return []
    return [label for label, predicate in RULES if predicate(shape, config)]


def classify_hands(hands: Sequence[HandFrame], config: ClassifierConfig = _DEFAULT_CONFIG) -> GestureLabel:
    """Only the first detected hand counts; extra hands are ignored."""
    if not hands:
        return GestureLabel.NONE
    return classify(hands[0], config)
