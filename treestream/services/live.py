"""
Live values: the current snapshot plus the listeners that want each new one.

Writers publish immutable snapshots; listeners get called synchronously, in
subscription order, on every publish. A listener that raises is logged and
the rest still run, so one broken renderer can't stall the stream.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LiveValue(Generic[T]):
    """An observable cell holding the latest published value."""

    def __init__(self, initial: T, name: str = "value") -> None:
        self.name = name
        self._value = initial
        self._listeners: list[Callable[[T], None]] = []
        self.version = 0

    @property
    def value(self) -> T:
        return self._value

    def publish(self, value: T) -> None:
        self._value = value
        self.version += 1
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("live: listener failed for %s", self.name)

    def subscribe(self, listener: Callable[[T], None], *, replay: bool = False) -> Callable[[], None]:
        """
        Register a listener. With replay=True it's called once right away with
        the current value. Returns a function that unsubscribes it.
        """
        self._listeners.append(listener)
        if replay:
            listener(self._value)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
