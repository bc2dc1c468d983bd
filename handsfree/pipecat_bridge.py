"""
pipecat_bridge.py — Hands-free Command Engine · Pipecat adapter
===============================================================
Lets a Pipecat voice pipeline drive the engine's voice path.  Drop it after
the STT service:

    transport.input() → STT → EngineBridge(engine) → ... → TTS → transport.output()

  • TranscriptionFrame       → engine.on_transcript
  • BotStartedSpeakingFrame  → engine.on_synthesis_start
  • BotStoppedSpeakingFrame  → engine.on_synthesis_end

Every frame is passed through unchanged.  Requires the `pipecat` extra.
"""

from __future__ import annotations

import logging

from pipecat.frames.frames import (
    BotStartedSpeakingFrame,
    BotStoppedSpeakingFrame,
    Frame,
    TranscriptionFrame,
)
from pipecat.processors.frame_processor import FrameDirection, FrameProcessor

from .engine import CommandEngine

log = logging.getLogger("handsfree.pipecat")


class EngineBridge(FrameProcessor):
    def __init__(self, engine: CommandEngine, **kwargs):
        super().__init__(**kwargs)
        self._engine = engine

    async def process_frame(self, frame: Frame, direction: FrameDirection) -> None:
        await super().process_frame(frame, direction)

        if isinstance(frame, TranscriptionFrame):
            text = (frame.text or "").strip()
            if text:
                log.debug("event=pipecat_transcript text=%.40s", text)
                self._engine.on_transcript(text)

        elif isinstance(frame, BotStartedSpeakingFrame):
            self._engine.on_synthesis_start()

        elif isinstance(frame, BotStoppedSpeakingFrame):
            self._engine.on_synthesis_end()

        await self.push_frame(frame, direction)
