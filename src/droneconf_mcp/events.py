"""Observer lists with explicit unsubscribe handles."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by ``subscribe``. Call :meth:`unsubscribe` to stop delivery."""

    def __init__(self, stream: EventStream, callback: Callable) -> None:
        self._stream = stream
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._stream._remove(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class EventStream:
    """An ordered list of callbacks.

    ``emit`` calls subscribers synchronously, in subscription order.
    ``post`` schedules each callback on the running event loop instead, so
    the emitter never waits on subscriber work; ``call_soon`` keeps FIFO
    order, so every subscriber still sees events in emission order.

    A failing subscriber is logged and does not stop delivery to the others.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._subs: list[Subscription] = []

    def __len__(self) -> int:
        return len(self._subs)

    def subscribe(self, callback: Callable) -> Subscription:
        sub = Subscription(self, callback)
        self._subs.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        try:
            self._subs.remove(sub)
        except ValueError:
            pass

    def emit(self, *args) -> None:
        for sub in list(self._subs):
            self._deliver(sub, args)

    def post(self, *args) -> None:
        loop = asyncio.get_running_loop()
        for sub in list(self._subs):
            loop.call_soon(self._deliver, sub, args)

    def _deliver(self, sub: Subscription, args: tuple) -> None:
        if not sub.active:
            return
        try:
            sub.callback(*args)
        except Exception:
            logger.exception("Subscriber %r of %s failed", sub.callback, self.name or "event")

    def clear(self) -> None:
        for sub in self._subs:
            sub.active = False
        self._subs.clear()
