"""Typed observer primitives replacing string-keyed event emitters."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Observer = Callable[[T], Awaitable[None] | None]


class Subscription:
    """Handle returned by every ``subscribe`` call.

    The handle stays active until :meth:`unsubscribe` is called; calling it
    more than once is harmless.
    """

    __slots__ = ("_cancel", "_active")

    def __init__(self, cancel: Optional[Callable[[], None]] = None) -> None:
        self._cancel = cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        cancel, self._cancel = self._cancel, None
        if cancel is not None:
            cancel()


class EventStream(Generic[T]):
    """Single-kind event stream with ordered, isolated delivery."""

    def __init__(self, name: str = "events") -> None:
        self._name = name
        self._observers: List[Observer[T]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._observers)

    def subscribe(self, callback: Observer[T]) -> Subscription:
        self._observers.append(callback)

        def _remove() -> None:
            try:
                self._observers.remove(callback)
            except ValueError:
                pass

        return Subscription(_remove)

    async def emit(self, event: T) -> None:
        for callback in list(self._observers):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Observer of %s failed", self._name)

    def clear(self) -> None:
        self._observers.clear()
