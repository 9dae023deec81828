from __future__ import annotations

from collections.abc import Callable
import concurrent.futures
import threading
from typing import Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Collapse concurrent calls for the same key onto one execution.

    The first caller for a key runs the function; callers arriving while it is
    in flight block on the same Future and receive the same result (or
    exception). Once the call completes the key is released, so a later call
    starts a fresh execution.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: dict[str, concurrent.futures.Future[T]] = {}
        self._followers: dict[str, int] = {}

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def followers(self, key: str) -> int:
        """Number of callers currently waiting on the in-flight call for key."""
        with self._lock:
            return self._followers.get(key, 0)

    def do(self, key: str, fn: Callable[[], T]) -> tuple[T, bool]:
        """Run fn once per key at a time.

        Returns:
            (result, shared) where shared is True for callers that joined an
            execution started by someone else
        """
        with self._lock:
            future = self._in_flight.get(key)
            leader = future is None
            if future is None:
                future = concurrent.futures.Future()
                self._in_flight[key] = future
            else:
                self._followers[key] = self._followers.get(key, 0) + 1

        if not leader:
            try:
                return future.result(), True
            finally:
                with self._lock:
                    waiting = self._followers.get(key, 0) - 1
                    if waiting > 0:
                        self._followers[key] = waiting
                    else:
                        self._followers.pop(key, None)

        try:
            result = fn()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result, False
        finally:
            with self._lock:
                self._in_flight.pop(key, None)
