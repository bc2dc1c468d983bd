"""
normalizer.py — Hands-free Command Engine · Transcript Command Normalizer
=========================================================================
Turns one recognised utterance into a canonical command token.

Natural phrases overlap ("set timer for 5 minutes" holds both a timer
keyword and a number), so rules are evaluated in a fixed order and the first
match wins.  Phrases match on word boundaries: "restart" is not "start",
"uncheck all" is not "check all".  Only digits count as numbers.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Optional

log = logging.getLogger("handsfree.normalizer")

MIN_MINUTES = 1
MAX_MINUTES = 120

# Canonical command tokens
NEXT        = "next"
BACK        = "back"
PAUSE       = "pause"
START       = "start"
RESTART     = "restart"
CHECK_ALL   = "check all"
UNCHECK_ALL = "uncheck all"
INGREDIENTS = "ingredients"
TIMER       = "timer"
SHOW_STEPS  = "show steps"


def timer_command(minutes: int) -> str:
    return f"timer:{minutes}"


def minutes_command(minutes: int) -> str:
    return f"{minutes} min"


def _phrases(*phrases: str) -> re.Pattern:
    alternatives = "|".join(re.escape(p).replace(r"\ ", r"\s+") for p in phrases)
    return re.compile(rf"\b(?:{alternatives})\b")


_NEXT_RE = _phrases("next", "next step", "forward", "continue", "go on", "move on", "skip")
_BACK_RE = _phrases("back", "go back", "previous", "last step", "step back")
_PAUSE_RE = _phrases("pause", "stop", "hold on", "wait")
_START_RE = _phrases("start", "begin", "resume", "play")
_RESTART_RE = _phrases("restart", "reset", "from the top", "from the beginning")
_CHECK_ALL_RE = _phrases("check all", "check everything", "mark all", "select all")
_UNCHECK_ALL_RE = _phrases("uncheck all", "uncheck everything", "unmark all", "deselect all", "clear all")
_INGREDIENTS_RE = _phrases("ingredients", "ingredient", "what do i need", "shopping list")
_TIMER_RE = _phrases("timer", "timers", "countdown", "alarm")
_STEPS_RE = _phrases("steps", "step", "instructions", "directions", "method", "recipe")

_TIMER_WORD_RE = re.compile(r"\btimers?\b")

# Whole integers only: "1.5" is neither 1 nor 5.
_NUMBER_RE = re.compile(r"(?<![\d.])\d+(?!\.?\d)")
_NUMBER_UNIT_RE = re.compile(r"(?<![\d.])(\d+)\s*-?\s*(?:minutes?|mins?)\b")


# ---------------------------------------------------------------------------
# Number helpers
# ---------------------------------------------------------------------------

def _in_range(n: int) -> bool:
    return MIN_MINUTES <= n <= MAX_MINUTES


def find_duration(text: str) -> Optional[int]:
    """First integer in `text` that is a valid timer duration, if any."""
    for match in _NUMBER_RE.finditer(text):
        n = int(match.group())
        if _in_range(n):
            return n
    return None


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

Rule = Callable[[str], Optional[str]]


def _keyword(pattern: re.Pattern, command: str) -> Rule:
    def rule(text: str) -> Optional[str]:
        return command if pattern.search(text) else None
    rule.__name__ = f"keyword_{command.replace(' ', '_')}"
    return rule


def _start(text: str) -> Optional[str]:
    if _START_RE.search(text) and not _TIMER_WORD_RE.search(text):
        return START
    return None


def _timer(text: str) -> Optional[str]:
    if not _TIMER_RE.search(text):
        return None
    minutes = find_duration(text)
    return timer_command(minutes) if minutes is not None else TIMER


def _number_with_unit(text: str) -> Optional[str]:
    for match in _NUMBER_UNIT_RE.finditer(text):
        n = int(match.group(1))
        if _in_range(n):
            return minutes_command(n)
    return None


def _bare_number(text: str) -> Optional[str]:
    if len(text.split()) > 2:
        return None
    minutes = find_duration(text)
    return minutes_command(minutes) if minutes is not None else None


RULES: tuple[Rule, ...] = (
    _keyword(_NEXT_RE, NEXT),
    _keyword(_BACK_RE, BACK),
    _keyword(_PAUSE_RE, PAUSE),
    _start,
    _keyword(_RESTART_RE, RESTART),
    _keyword(_CHECK_ALL_RE, CHECK_ALL),
    _keyword(_UNCHECK_ALL_RE, UNCHECK_ALL),
    _keyword(_INGREDIENTS_RE, INGREDIENTS),
    _timer,
    _number_with_unit,
    _bare_number,
    _keyword(_STEPS_RE, SHOW_STEPS),
)


def normalize(transcript: Optional[str]) -> Optional[str]:
    """Map a transcript to a command token.

    Unrecognised speech is returned unchanged so the action layer can treat
    it as free text (e.g. an ingredient name).  Blank input gives None.
    """
    if transcript is None:
        return None
    text = " ".join(transcript.lower().split())
    if not text:
        return None

    for rule in RULES:
        command = rule(text)
        if command is not None:
            log.debug("event=transcript_normalized rule=%s command=%s", rule.__name__, command)
            return command

    log.debug("event=transcript_passthrough text=%.60s", transcript)
    return transcript
