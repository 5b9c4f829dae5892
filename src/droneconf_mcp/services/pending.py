"""Single-slot, correlation-keyed futures for awaited replies."""

from __future__ import annotations

import asyncio
from typing import Any, Generic, Hashable, TypeVar

from ..exceptions import ConcurrencyError, ConcurrencyErrorKind

K = TypeVar("K", bound=Hashable)


class PendingRequests(Generic[K]):
    """At most one outstanding future per key.

    Registering a key that is already pending raises :class:`ConcurrencyError`
    instead of replacing the first waiter. Each slot may carry a context
    object (e.g. the value a write is waiting to see confirmed).
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._slots: dict[K, tuple[asyncio.Future, Any]] = {}

    def __contains__(self, key: K) -> bool:
        return key in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def register(self, key: K, context: Any = None) -> asyncio.Future:
        if key in self._slots:
            raise ConcurrencyError(
                ConcurrencyErrorKind.REQUEST_PENDING,
                f"{self.name or 'request'} {key!r} already pending",
            )
        future = asyncio.get_running_loop().create_future()
        self._slots[key] = (future, context)
        return future

    def context(self, key: K) -> Any:
        slot = self._slots.get(key)
        return slot[1] if slot else None

    def resolve(self, key: K, value: Any = None) -> bool:
        """Complete the waiter for ``key``. Returns False if nothing was waiting."""
        slot = self._slots.pop(key, None)
        if slot is None or slot[0].done():
            return False
        slot[0].set_result(value)
        return True

    def reject(self, key: K, error: BaseException) -> bool:
        slot = self._slots.pop(key, None)
        if slot is None or slot[0].done():
            return False
        slot[0].set_exception(error)
        return True

    def discard(self, key: K, future: asyncio.Future | None = None) -> None:
        """Drop the slot for ``key`` (only if it still holds ``future``, when given)."""
        slot = self._slots.get(key)
        if slot is not None and (future is None or slot[0] is future):
            del self._slots[key]

    def fail_all(self, error: BaseException) -> int:
        """Fail every waiter with ``error`` and empty the map."""
        slots = list(self._slots.values())
        self._slots.clear()
        count = 0
        for future, _context in slots:
            if not future.done():
                future.set_exception(error)
                count += 1
        return count
