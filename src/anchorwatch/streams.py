"""Latest-value broadcast channels.

A ``ValueStream`` holds one current value and fans every change out to its
subscribers. Each subscriber gets its own queue, so a slow consumer never
blocks the producer or other consumers.
"""

import asyncio
import logging
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription(Generic[T]):
    """Async iterator over a stream's changes. Registered as soon as it is created."""

    def __init__(self, stream: "ValueStream[T]") -> None:
        self._stream = stream
        self._queue: asyncio.Queue[T] = asyncio.Queue()

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        return await self._queue.get()

    def _put(self, value: T) -> None:
        self._queue.put_nowait(value)

    def close(self) -> None:
        self._stream._subscriptions.discard(self)

    def __enter__(self) -> "Subscription[T]":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class ValueStream(Generic[T]):
    def __init__(self, initial: T, name: str = "stream") -> None:
        self.name = name
        self._value = initial
        self._subscriptions: set[Subscription[T]] = set()

    @property
    def current(self) -> T:
        return self._value

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def set(self, value: T) -> bool:
        """Replace the current value. Returns False (and emits nothing) if unchanged."""
        if value == self._value:
            return False
        self._value = value
        for subscription in self._subscriptions:
            subscription._put(value)
        return True

    def subscribe(self, replay: bool = True) -> Subscription[T]:
        """Follow changes, starting with the current value if ``replay``.

        Use as ``with stream.subscribe() as values: async for v in values``.
        """
        subscription = Subscription(self)
        if replay:
            subscription._put(self._value)
        self._subscriptions.add(subscription)
        logger.debug("%s: subscriber added (%d total)", self.name, len(self._subscriptions))
        return subscription
