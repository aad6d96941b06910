from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    Collapse concurrent calls for the same key into one execution.

    The first caller for a key runs `fn` on its own thread; callers arriving while it
    is in flight wait on the same Future and get its result or exception. Nothing is
    remembered once the call completes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[str, Future[T]] = {}

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._calls

    def do(self, key: str, fn: Callable[[], T], *, timeout: Optional[float] = None) -> T:
        with self._lock:
            fut = self._calls.get(key)
            leader = fut is None
            if fut is None:
                fut = Future()
                self._calls[key] = fut

        if leader:
            try:
                fut.set_result(fn())
            except BaseException as e:
                fut.set_exception(e)
            finally:
                with self._lock:
                    self._calls.pop(key, None)

        # Waiters give up after `timeout`; the leader has already finished by now.
        return fut.result(timeout=timeout)
