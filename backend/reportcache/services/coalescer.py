"""Request coalescing for platform fetches.

WHAT:
    Maps CacheKey -> concurrent.futures.Future for fetches currently in
    flight. The first caller for a key runs the fetch; callers arriving
    while it runs wait on the same Future and get the same result (or the
    same exception).

WHY:
    A dashboard load and a bulk refresh hitting the same client at the same
    time must not issue two identical platform calls.

    One instance is owned by the application (app.state) and handed to the
    orchestrator and the report service explicitly.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Callable, Dict, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestCoalescer:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: Dict[Hashable, Future] = {}

    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def run(self, key: Hashable, fn: Callable[[], T]) -> T:
        """Run `fn` for `key`, or join the call already running for it.

        Raises:
            Whatever `fn` raised, in the leader and in every joined caller
        """
        with self._lock:
            future = self._in_flight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._in_flight[key] = future

        if not leader:
            logger.debug("[COALESCER] Joining in-flight fetch for %s", key)
            return future.result()

        try:
            result = fn()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._in_flight.pop(key, None)
