"""Composable cancellation latches.

exocommand-mcp runtime module

This module provides:
- CancellationSignal: a one-way latch that fires at most once
- CancellationController: the owner side of a signal (explicit cancel)
- Composition of 0..N signals into one composite that fires on the first
  constituent and remembers which constituent that was
- Timeout signals whose clock starts at composition time

Key design points:
- Observers are plain synchronous callables, run on the event loop thread
- Firing is idempotent; an active signal can never become inactive again
- A composite detaches its forwarding observers from the remaining
  constituents once it has fired
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

__all__ = [
    "CancellationController",
    "CancellationSignal",
    "Observer",
]

logger = logging.getLogger(__name__)

Observer = Callable[["CancellationSignal"], None]


class CancellationSignal:
    """One-way cancellation latch.

    Attributes:
        is_active: Whether the signal has fired
        reason: Human-readable reason passed when the signal fired
        origin: For composites, the constituent that fired first; for plain
            signals, the signal itself
    """

    def __init__(self) -> None:
        self._active = False
        self._reason: str | None = None
        self._origin: CancellationSignal | None = None
        self._observers: list[Observer] = []
        self._event: asyncio.Event | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._links: list[tuple[CancellationSignal, Observer]] = []

    def __repr__(self) -> str:
        state = f"active, reason={self._reason!r}" if self._active else "idle"
        return f"CancellationSignal({state})"

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def origin(self) -> CancellationSignal | None:
        return self._origin

    def add_observer(self, observer: Observer) -> None:
        """Register a one-shot observer.

        If the signal is already active the observer is invoked immediately.
        """
        if self._active:
            self._notify(observer)
            return
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def wait(self) -> None:
        """Suspend until the signal fires."""
        if self._active:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def dispose(self) -> None:
        """Release the timer and forwarding links without firing."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._detach()

    def _fire(self, reason: str | None, origin: CancellationSignal | None = None) -> bool:
        if self._active:
            return False

        self._active = True
        self._reason = reason
        self._origin = origin if origin is not None else self
        self._timer = None
        self._detach()

        if self._event is not None:
            self._event.set()

        observers, self._observers = self._observers, []
        for observer in observers:
            self._notify(observer)
        return True

    def _notify(self, observer: Observer) -> None:
        try:
            observer(self)
        except Exception as e:
            logger.warning(f"Error in cancellation observer: {e}")

    def _detach(self) -> None:
        links, self._links = self._links, []
        for parent, forward in links:
            parent.remove_observer(forward)

    @classmethod
    def never(cls) -> CancellationSignal:
        """A signal with no sources; it never fires."""
        return cls()

    @classmethod
    def timeout(cls, seconds: float, reason: str | None = None) -> CancellationSignal:
        """A signal that fires ``seconds`` after this call.

        Must be called from inside a running event loop.
        """
        loop = asyncio.get_running_loop()
        signal = cls()
        signal._timer = loop.call_later(
            seconds,
            signal._fire,
            reason or f"timed out after {seconds:g}s",
        )
        return signal

    @classmethod
    def any(cls, *signals: CancellationSignal | None) -> CancellationSignal:
        """Compose signals; the result fires as soon as any constituent does.

        ``None`` entries are skipped, so optional sources can be passed as-is.
        The first constituent to fire becomes the composite's ``origin``.
        """
        composite = cls()
        for parent in signals:
            if parent is None:
                continue
            if parent.is_active:
                composite._fire(parent.reason, origin=parent)
                break

            def forward(fired: CancellationSignal, _composite: CancellationSignal = composite) -> None:
                _composite._fire(fired.reason, origin=fired)

            parent.add_observer(forward)
            composite._links.append((parent, forward))
        return composite


class CancellationController:
    """Owner side of a cancellation signal.

    Example:
        controller = CancellationController()
        signal = CancellationSignal.any(controller.signal, CancellationSignal.timeout(30))
        ...
        controller.cancel("client disconnected")
    """

    def __init__(self) -> None:
        self._signal = CancellationSignal()

    @property
    def signal(self) -> CancellationSignal:
        return self._signal

    @property
    def cancelled(self) -> bool:
        return self._signal.is_active

    def cancel(self, reason: str = "cancelled") -> bool:
        """Fire the signal.

        Returns:
            True if this call fired the signal, False if it was already active
        """
        return self._signal._fire(reason)
