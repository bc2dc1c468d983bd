"""
config.py — Hands-free Command Engine · Runtime Configuration
=============================================================
Pydantic models for every tunable parameter of the engine.
Serialises to / deserialises from JSON.  Used by:
  • server.py  — GET/PUT /config endpoints, builds the engine from it
  • engine.py  — hands each section to the component it configures
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .models import AppContext

log = logging.getLogger("handsfree.config")

CONFIG_PATH_ENV = "HANDSFREE_CONFIG"


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class ClassifierConfig(BaseModel):
    """Geometric thresholds of the landmark classifier (pose-service units)."""
    pointing_min_distance: float = Field(default=40.0, gt=0.0, description="Min wrist→index-tip distance for pointing")
    pointing_min_rise: float = Field(default=25.0, ge=0.0, description="Min upward wrist→index-tip offset for pointing")
    pointing_vertical_ratio: float = Field(default=0.6, gt=0.0, description="|dy| must exceed ratio·|dx| for pointing")
    thumbs_down_margin: float = Field(default=15.0, ge=0.0, description="Min thumb tip drop below its MCP")
    ok_max_distance: float = Field(default=60.0, gt=0.0, description="Max thumb-tip/index-tip distance for OK")
    scale_by_hand_size: bool = Field(default=False, description="Scale distance thresholds by wrist→middle-MCP length")
    reference_hand_size: float = Field(default=100.0, gt=0.0, description="Hand size the absolute thresholds were tuned for")
    frame_budget_ms: float = Field(default=33.0, gt=0.0, description="Log a warning when one classification is slower")


class StabilizerConfig(BaseModel):
    """Gesture hold / cooldown rules."""
    hold_frames: int = Field(default=1, ge=1, le=30, description="Frames a gesture must be held before dispatch")
    cooldown_sec: float = Field(default=1.5, ge=0.0, le=10.0, description="Cooldown after each dispatched gesture")
    absent_grace_sec: float = Field(default=1.0, ge=0.0, le=10.0, description="No-hand time before the session resets")


class AudioConfig(BaseModel):
    """Microphone / speaker arbitration."""
    resume_delay_sec: float = Field(default=1.5, ge=0.0, le=10.0, description="Settle window after synthesis ends")
    retry_backoff_sec: float = Field(default=2.0, ge=0.0, le=30.0, description="Wait before retrying a faulted input")
    max_retries: int = Field(default=3, ge=1, le=20, description="Start attempts before giving up")


class DispatcherConfig(BaseModel):
    """Duplicate suppression."""
    suppression_window_sec: float = Field(default=2.0, ge=0.0, le=30.0, description="Per-source duplicate window")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class EngineConfig(BaseModel):
    """Complete runtime configuration for the command engine."""
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    stabilizer: StabilizerConfig = Field(default_factory=StabilizerConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    voice_enabled: bool = Field(default=True, description="Voice control on at startup")
    gesture_enabled: bool = Field(default=True, description="Gesture control on at startup")
    initial_context: AppContext = Field(default=AppContext.STEPS, description="Context until the app reports one")

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "EngineConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s — using defaults", p, exc)
            return cls()

    @classmethod
    def from_env(cls) -> "EngineConfig":
        path = config_path_from_env()
        return cls.load(path) if path else cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "EngineConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"stabilizer": {"cooldown_sec": 2.0}}
        only changes stabilizer.cooldown_sec, leaving everything else intact.
        """
        base = self.model_dump(mode="json")
        _deep_merge(base, patch)
        return EngineConfig.model_validate(base)


def config_path_from_env() -> Optional[Path]:
    raw = os.getenv(CONFIG_PATH_ENV)
    return Path(raw) if raw else None


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
