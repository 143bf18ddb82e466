"""Cancellable timer handles owned by a per-connection group."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from loguru import logger


class Timer:
    """One-shot or repeating callback on the running loop."""

    def __init__(
        self,
        group: TimerGroup,
        name: str,
        delay: float,
        callback: Callable[[], Any],
        *,
        repeat: bool = False,
    ) -> None:
        self.name = name
        self.delay = delay
        self._group = group
        self._callback = callback
        self._repeat = repeat
        self._handle: asyncio.TimerHandle | None = None
        self._cancelled = False

    @property
    def active(self) -> bool:
        return self._handle is not None and not self._cancelled

    def start(self) -> Timer:
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)
        return self

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._group._discard(self)

    def _fire(self) -> None:
        self._handle = None
        if self._repeat:
            self._handle = asyncio.get_running_loop().call_later(self.delay, self._fire)
        else:
            self._cancelled = True
            self._group._discard(self)
        try:
            result = self._callback()
            if asyncio.iscoroutine(result):
                self._group._track_task(asyncio.ensure_future(result), self.name)
        except Exception as exc:
            logger.exception("Timer {} callback failed: {}", self.name, exc)


class TimerGroup:
    """Owns every timer of one connection; leaving its scope cancels them all."""

    def __init__(self, owner: str = "") -> None:
        self.owner = owner
        self._timers: dict[str, Timer] = {}
        self._tasks: set[asyncio.Task] = set()

    def __enter__(self) -> TimerGroup:
        return self

    def __exit__(self, *exc: object) -> None:
        self.cancel_all()

    def __contains__(self, name: str) -> bool:
        return name in self._timers

    def __len__(self) -> int:
        return len(self._timers)

    @property
    def names(self) -> list[str]:
        return list(self._timers)

    def call_later(self, name: str, delay: float, callback: Callable[[], Any]) -> Timer:
        """Arm a one-shot timer, replacing any timer with the same name."""
        self.cancel(name)
        timer = Timer(self, name, delay, callback).start()
        self._timers[name] = timer
        return timer

    def call_every(self, name: str, interval: float, callback: Callable[[], Any]) -> Timer:
        """Arm a repeating timer, replacing any timer with the same name."""
        self.cancel(name)
        timer = Timer(self, name, interval, callback, repeat=True).start()
        self._timers[name] = timer
        return timer

    def get(self, name: str) -> Timer | None:
        return self._timers.get(name)

    def cancel(self, name: str) -> bool:
        timer = self._timers.get(name)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_prefix(self, prefix: str) -> int:
        names = [n for n in self._timers if n.startswith(prefix)]
        for name in names:
            self.cancel(name)
        return len(names)

    def cancel_all(self) -> None:
        for timer in list(self._timers.values()):
            timer.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _discard(self, timer: Timer) -> None:
        if self._timers.get(timer.name) is timer:
            del self._timers[timer.name]

    def _track_task(self, task: asyncio.Task, name: str) -> None:
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.opt(exception=t.exception()).error("Timer {} task failed", name)

        task.add_done_callback(_done)
