"""Cancellation tokens and the bounded worker pool used by the pollers."""

from __future__ import annotations

import queue
import threading
from typing import Any, Callable, Iterable, Sequence

from .exceptions import RequestCancelled


class CancelToken:
    """Cooperative cancellation shared by every step of one fetch."""

    def __init__(self, parent: "CancelToken | None" = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return bool(self._parent and self._parent.cancelled)

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelled()

    def child(self) -> "CancelToken":
        """Return a token that is also cancelled whenever this one is."""

        return CancelToken(parent=self)


class SourceSlot:
    """Tracks the latest generation of one polling source.

    Starting a new fetch cancels the previous one, so at most one response per
    generation is ever applied.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._token: CancelToken | None = None
        self.generation = 0

    def begin(self, parent: CancelToken | None = None) -> CancelToken:
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self._token = parent.child() if parent else CancelToken()
            self.generation += 1
            return self._token

    def is_current(self, token: CancelToken) -> bool:
        with self._lock:
            return token is self._token and not token.cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._token is not None:
                self._token.cancel()


class BoundedWorkerPool:
    """Run tasks on at most ``limit`` worker threads pulling from one queue."""

    def __init__(self, limit: int = 5) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.max_in_flight = 0
        self._in_flight = 0
        self._lock = threading.Lock()

    def _enter(self) -> None:
        with self._lock:
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)

    def _leave(self) -> None:
        with self._lock:
            self._in_flight -= 1

    def run(
        self,
        tasks: Sequence[Callable[[], Any]] | Iterable[Callable[[], Any]],
        token: CancelToken | None = None,
    ) -> list:
        """Execute ``tasks`` and return their results in task order.

        A task that raises contributes its exception object to the results.
        Once ``token`` is cancelled, tasks not yet started are skipped and
        report ``None``.
        """

        tasks = list(tasks)
        results: list[Any] = [None] * len(tasks)
        if not tasks:
            return results

        work: "queue.Queue[int]" = queue.Queue()
        for index in range(len(tasks)):
            work.put(index)

        def worker() -> None:
            while True:
                try:
                    index = work.get_nowait()
                except queue.Empty:
                    return
                if token is not None and token.cancelled:
                    continue
                self._enter()
                try:
                    results[index] = tasks[index]()
                except Exception as exc:  # collected for the caller
                    results[index] = exc
                finally:
                    self._leave()

        workers = [
            threading.Thread(target=worker, name=f"wip-worker-{n}", daemon=True)
            for n in range(min(self.limit, len(tasks)))
        ]
        for thread in workers:
            thread.start()
        for thread in workers:
            thread.join()
        return results
