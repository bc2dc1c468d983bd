"""Hands-free Command Engine: gesture and voice commands for a recipe viewer."""

from .classifier import classify
from .config import EngineConfig
from .dispatcher import CommandDispatcher, command_for_gesture
from .engine import ActionLayer, CommandEngine, EngineStatus
from .errors import CaptureUnavailableError, HandsfreeError, InputFaultError
from .models import (
    AppContext,
    AudioPhase,
    Availability,
    CommandSource,
    GestureLabel,
    HandFrame,
    InputFault,
    Landmark,
)
from .normalizer import normalize

__all__ = [
    "ActionLayer",
    "AppContext",
    "AudioPhase",
    "Availability",
    "CaptureUnavailableError",
    "CommandDispatcher",
    "CommandEngine",
    "CommandSource",
    "EngineConfig",
    "EngineStatus",
    "GestureLabel",
    "HandFrame",
    "HandsfreeError",
    "InputFault",
    "InputFaultError",
    "Landmark",
    "classify",
    "command_for_gesture",
    "normalize",
]
