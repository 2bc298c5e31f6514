from __future__ import annotations

import threading
from typing import Generic, Iterator, List, Optional, TypeVar


T = TypeVar("T")

_EMPTY = object()


class BroadcastClosed(RuntimeError):
    """Raised by `Subscription.get()` once the subscription or its broadcast is closed."""


class Subscription(Generic[T]):
    """
    One observer's view of a `StateBroadcast`.

    - Holds at most one pending value; a newer publish replaces an unconsumed one.
    - `get()` blocks for the next value, `poll()` never blocks.
    - Iterating yields values until the subscription is closed.
    """

    def __init__(self, broadcast: "StateBroadcast[T]") -> None:
        self._broadcast = broadcast
        self._cond = threading.Condition()
        self._pending: object = _EMPTY
        self._closed = False

    def _offer(self, value: T) -> None:
        with self._cond:
            if self._closed:
                return
            self._pending = value
            self._cond.notify_all()

    def _shutdown(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, timeout: Optional[float] = None) -> T:
        with self._cond:
            if not self._cond.wait_for(
                lambda: self._pending is not _EMPTY or self._closed, timeout=timeout
            ):
                raise TimeoutError("no state published within timeout")
            if self._pending is _EMPTY:
                raise BroadcastClosed("subscription closed")
            value = self._pending
            self._pending = _EMPTY
            return value  # type: ignore[return-value]

    def poll(self) -> Optional[T]:
        with self._cond:
            if self._pending is _EMPTY:
                return None
            value = self._pending
            self._pending = _EMPTY
            return value  # type: ignore[return-value]

    def close(self) -> None:
        self._broadcast._unsubscribe(self)
        self._shutdown()

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                yield self.get()
            except BroadcastClosed:
                return

    def __enter__(self) -> "Subscription[T]":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class StateBroadcast(Generic[T]):
    """
    Single-producer, multi-consumer channel that retains the latest value.

    New subscribers immediately receive the most recent value (replay of one).
    Slow subscribers only ever see the newest value; older unconsumed values
    are dropped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest: object = _EMPTY
        self._subscribers: List[Subscription[T]] = []
        self._closed = False

    @property
    def value(self) -> Optional[T]:
        latest = self._latest
        return None if latest is _EMPTY else latest  # type: ignore[return-value]

    def publish(self, value: T) -> None:
        with self._lock:
            if self._closed:
                raise BroadcastClosed("cannot publish to a closed broadcast")
            self._latest = value
            for sub in list(self._subscribers):
                sub._offer(value)

    def subscribe(self) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self)
        with self._lock:
            if self._closed:
                sub._shutdown()
                return sub
            if self._latest is not _EMPTY:
                sub._offer(self._latest)  # type: ignore[arg-type]
            self._subscribers.append(sub)
        return sub

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            subs, self._subscribers = self._subscribers, []
        for sub in subs:
            sub._shutdown()

    def _unsubscribe(self, sub: Subscription[T]) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)
