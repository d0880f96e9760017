from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscribers(Generic[T]):
    """Ordered set of callbacks notified with each published value.

    Publishing iterates over a snapshot, so a callback may unsubscribe itself
    (or others) while being notified.
    """

    def __init__(self) -> None:
        self._callbacks: dict[int, Callable[[T], None]] = {}
        self._next_token = 0

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        self._callbacks[token] = callback

        def unsubscribe() -> None:
            self._callbacks.pop(token, None)

        return unsubscribe

    def publish(self, value: T) -> None:
        for token, callback in list(self._callbacks.items()):
            if token not in self._callbacks:
                continue
            try:
                callback(value)
            except Exception:
                logger.exception("Subscriber %r failed", callback)

    def __len__(self) -> int:
        return len(self._callbacks)
