from __future__ import annotations

from .models import InputFault


class HandsfreeError(Exception):
    """Base class for errors raised by the engine or its device adapters."""


class InputFaultError(HandsfreeError):
    """Raised by a microphone adapter to say *why* input could not start."""

    def __init__(self, fault: InputFault, message: str = ""):
        self.fault = InputFault(fault)
        super().__init__(message or self.fault.value)


class CaptureUnavailableError(HandsfreeError):
    """Raised by a camera adapter when no usable camera can be opened."""
