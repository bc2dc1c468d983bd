"""
models.py — Hands-free Command Engine · Shared Types
====================================================
Value types that cross module boundaries: landmark frames coming in from the
pose service, gesture labels, transcripts, and the enums that name contexts,
command sources and audio phases.
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# Landmark indices of the 21-point hand model.
WRIST = 0
THUMB_CMC, THUMB_MCP, THUMB_IP, THUMB_TIP = 1, 2, 3, 4
INDEX_MCP, INDEX_PIP, INDEX_DIP, INDEX_TIP = 5, 6, 7, 8
MIDDLE_MCP, MIDDLE_PIP, MIDDLE_DIP, MIDDLE_TIP = 9, 10, 11, 12
RING_MCP, RING_PIP, RING_DIP, RING_TIP = 13, 14, 15, 16
PINKY_MCP, PINKY_PIP, PINKY_DIP, PINKY_TIP = 17, 18, 19, 20

LANDMARK_COUNT = 21


# ---------------------------------------------------------------------------
# Landmark frames
# ---------------------------------------------------------------------------

class Landmark(BaseModel):
    """One keypoint in the pose service's coordinate space (smaller y is up)."""
    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    z: Optional[float] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class HandFrame(BaseModel):
    """Landmarks of one detected hand for one detection tick.

    Normally exactly 21 points in anatomical order.  Shorter frames are
    accepted here and classified as ``none``.
    """
    model_config = ConfigDict(frozen=True)

    landmarks: tuple[Landmark, ...]
    handedness: Optional[str] = None

    @classmethod
    def from_points(cls, points, handedness: Optional[str] = None) -> "HandFrame":
        """Build a frame from ``(x, y)`` / ``(x, y, z)`` tuples or landmark dicts."""
        landmarks = []
        for p in points:
            if isinstance(p, Landmark):
                landmarks.append(p)
            elif isinstance(p, dict):
                landmarks.append(Landmark(**p))
            else:
                landmarks.append(Landmark(x=p[0], y=p[1], z=p[2] if len(p) > 2 else None))
        return cls(landmarks=tuple(landmarks), handedness=handedness)

    def __len__(self) -> int:
        return len(self.landmarks)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class GestureLabel(str, Enum):
    OPEN_PALM     = "open_palm"
    FIST          = "fist"
    THUMBS_UP     = "thumbs_up"
    THUMBS_DOWN   = "thumbs_down"
    POINTING_UP   = "pointing_up"
    ROCK          = "rock"
    OK            = "ok"
    ONE_FINGER    = "one_finger"
    TWO_FINGERS   = "two_fingers"
    THREE_FINGERS = "three_fingers"
    FOUR_FINGERS  = "four_fingers"
    NONE          = "none"


class CommandSource(str, Enum):
    GESTURE = "gesture"
    VOICE   = "voice"


class AppContext(str, Enum):
    """View the action layer is currently showing."""
    OVERVIEW    = "overview"
    STEPS       = "steps"
    INGREDIENTS = "ingredients"
    TIMER       = "timer"


class AudioPhase(str, Enum):
    IDLE      = "idle"        # voice off, or given up after faults
    LISTENING = "listening"   # microphone requested / running
    PAUSED    = "paused"      # input cut; waiting for output to start or to settle
    SPEAKING  = "speaking"    # synthesis in progress, input stopped
    RETRYING  = "retrying"    # waiting out the backoff after a transient fault


class InputFault(str, Enum):
    NO_SPEECH        = "no_speech"
    PERMISSION_DENIED = "permission_denied"
    ABORTED          = "aborted"
    SERVICE_DISABLED = "service_disabled"
    NETWORK          = "network"
    AUDIO_CAPTURE    = "audio_capture"

    @property
    def retryable(self) -> bool:
        return self in (InputFault.NETWORK, InputFault.AUDIO_CAPTURE)


class Availability(str, Enum):
    AVAILABLE   = "available"
    UNAVAILABLE = "unavailable"   # transient faults exhausted the budget
    BLOCKED     = "blocked"       # non-retryable fault; needs the user to re-enable


# ---------------------------------------------------------------------------
# Transcripts
# ---------------------------------------------------------------------------

_transcript_seq = itertools.count(1)


@dataclass(frozen=True)
class Transcript:
    text: str
    seq: int = field(default_factory=lambda: next(_transcript_seq))
    received_at: float = field(default_factory=time.monotonic)
