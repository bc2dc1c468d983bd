"""
scheduling.py — Hands-free Command Engine · Cancellable single-shot timers
==========================================================================
Cooldown expiry, resume delay and retry backoff are all one-shot timers that
must be cancellable at any moment.  State machines only see the small
`Scheduler` protocol; the engine supplies `LoopScheduler`, tests supply a
manual one.

Cancellation is idempotent: cancelling a timer that already fired or was
already cancelled is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

log = logging.getLogger("handsfree.scheduling")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    @property
    def active(self) -> bool: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None], *, name: str = "") -> TimerHandle: ...


class ScheduledTimer:
    """Single-shot timer on an asyncio loop.

    When `submit` is given, the expiry is handed to it instead of being run
    inline, so the engine can push it through its serialized queue.  The
    cancelled flag is re-checked when the callback finally runs, which keeps
    a timer cancelled after it fired (but before it was processed) silent.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        delay: float,
        callback: Callable[[], None],
        *,
        name: str = "",
        submit: Optional[Callable[[Callable[[], None]], None]] = None,
    ):
        self.name = name
        self._callback = callback
        self._submit = submit
        self._done = False
        self._handle = loop.call_later(delay, self._expire)

    @property
    def active(self) -> bool:
        return not self._done

    def cancel(self) -> None:
        if self._done:
            return
        self._done = True
        self._handle.cancel()
        log.debug("event=timer_cancelled name=%s", self.name)

    def _expire(self) -> None:
        if self._done:
            return
        if self._submit is not None:
            self._submit(self._run)
        else:
            self._run()

    def _run(self) -> None:
        if self._done:
            return
        self._done = True
        self._callback()


class LoopScheduler:
    """`Scheduler` backed by `loop.call_later`."""

    def __init__(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        submit: Optional[Callable[[Callable[[], None]], None]] = None,
    ):
        self._loop = loop
        self._submit = submit

    def call_later(self, delay: float, callback: Callable[[], None], *, name: str = "") -> ScheduledTimer:
        loop = self._loop or asyncio.get_running_loop()
        return ScheduledTimer(loop, delay, callback, name=name, submit=self._submit)


def cancel_timer(handle: Optional[TimerHandle]) -> None:
    """Cancel `handle` if there is one."""
    if handle is not None:
        handle.cancel()
