import threading
from collections import deque
from typing import Deque, Optional, Set

from .parsing import UrlTools
from .types import FrontierEntry


class Frontier:
    """Breadth-first work queue shared by all crawl workers.

    A URL is marked visited when it is enqueued, so each normalized URL is
    dispatched at most once per run. Completion is detected from two
    counters: ``pending`` (queued, not yet handed out) and ``in_flight``
    (handed out, not yet marked done). A worker that still holds an entry
    may enqueue more work, so the crawl is only over when both are zero.
    """

    def __init__(self, base_url: str, max_depth: int):
        self.base_url = base_url
        self.max_depth = max_depth
        self._pending: Deque[FrontierEntry] = deque()
        self._visited: Set[str] = set()
        self._in_flight = 0
        self._dequeued = 0
        self._draining = False
        self._cond = threading.Condition(threading.Lock())

    def try_enqueue(self, url: str, depth: int) -> bool:
        if depth > self.max_depth:
            return False
        normalized = UrlTools.normalize_link(self.base_url, url)
        if normalized is None:
            return False
        with self._cond:
            if self._draining or normalized in self._visited:
                return False
            self._visited.add(normalized)
            self._pending.append(FrontierEntry(normalized, depth))
            self._cond.notify()
        return True

    def dequeue(self) -> Optional[FrontierEntry]:
        """Block for the next entry; ``None`` means the crawl is over."""
        with self._cond:
            while True:
                if self._draining:
                    return None
                if self._pending:
                    entry = self._pending.popleft()
                    self._in_flight += 1
                    self._dequeued += 1
                    return entry
                if self._in_flight == 0:
                    return None
                self._cond.wait()

    def mark_done(self) -> None:
        with self._cond:
            if self._in_flight <= 0:
                raise RuntimeError("mark_done() called without a matching dequeue()")
            self._in_flight -= 1
            if self._in_flight == 0 and not self._pending:
                self._cond.notify_all()

    def drain(self) -> int:
        """Stop handing out work and drop whatever is still queued."""
        with self._cond:
            self._draining = True
            discarded = len(self._pending)
            self._pending.clear()
            self._cond.notify_all()
        return discarded

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._pending)

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    @property
    def dequeued(self) -> int:
        with self._cond:
            return self._dequeued

    @property
    def discovered(self) -> int:
        with self._cond:
            return len(self._visited)

    @property
    def draining(self) -> bool:
        with self._cond:
            return self._draining

    @property
    def is_complete(self) -> bool:
        with self._cond:
            return not self._pending and self._in_flight == 0
