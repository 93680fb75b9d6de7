import threading
import time
from dataclasses import dataclass, replace


@dataclass
class Totals:
    pages: int = 0
    bytes: int = 0
    fetch_errors: int = 0
    fetch_ms_sum: float = 0.0
    retries: int = 0
    disallowed: int = 0
    extraction_errors: int = 0
    records_persisted: int = 0
    records_rejected: int = 0
    persist_errors: int = 0


class Metrics:
    def __init__(self):
        self._totals = Totals()
        self._lock = threading.Lock()
        self._start = time.time()

    def record_fetch(self, ok: bool, bytes_read: int, fetch_ms: float) -> None:
        with self._lock:
            if ok:
                self._totals.pages += 1
            else:
                self._totals.fetch_errors += 1
            self._totals.bytes += max(0, bytes_read)
            self._totals.fetch_ms_sum += fetch_ms

    def record_retry(self) -> None:
        with self._lock:
            self._totals.retries += 1

    def record_disallowed(self) -> None:
        with self._lock:
            self._totals.disallowed += 1

    def record_extraction_error(self) -> None:
        with self._lock:
            self._totals.extraction_errors += 1

    def record_persist(self, written: int, rejected: int = 0) -> None:
        with self._lock:
            self._totals.records_persisted += written
            self._totals.records_rejected += rejected

    def record_persist_error(self, rejected: int = 0) -> None:
        with self._lock:
            self._totals.persist_errors += 1
            self._totals.records_rejected += rejected

    def snapshot(self) -> tuple[Totals, float]:
        with self._lock:
            t = replace(self._totals)
        elapsed = max(1e-6, time.time() - self._start)
        return t, elapsed


class StatsLogger(threading.Thread):
    daemon = True

    def __init__(self, metrics: Metrics, interval_s: float, log_fn):
        super().__init__(name="stats-logger")
        self._metrics = metrics
        self._interval = max(0.5, interval_s)
        self._log = log_fn
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.is_set():
            self._stop_event.wait(self._interval)
            if self._stop_event.is_set():
                break
            totals, elapsed = self._metrics.snapshot()
            fetched = totals.pages + totals.fetch_errors
            self._log(
                "Perf: pages=%d, errors=%d, retries=%d, jobs=%d, MB=%.2f, avg_fetch_ms=%.1f, pages/sec=%.2f",
                totals.pages,
                totals.fetch_errors,
                totals.retries,
                totals.records_persisted,
                totals.bytes / (1024 * 1024),
                totals.fetch_ms_sum / max(1, fetched),
                totals.pages / elapsed,
            )

    def stop(self) -> None:
        self._stop_event.set()
