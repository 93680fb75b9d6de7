import logging
import threading

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

from .metrics import Metrics, Totals


logger = logging.getLogger(__name__)

# Totals field -> (metric name, help text)
_COUNTERS = {
    "pages": ("jobcrawl_pages_total", "Pages fetched successfully"),
    "bytes": ("jobcrawl_bytes_total", "Bytes downloaded"),
    "fetch_errors": ("jobcrawl_fetch_errors_total", "Pages abandoned after fetch failure"),
    "retries": ("jobcrawl_retries_total", "Fetch retries after transient errors"),
    "disallowed": ("jobcrawl_disallowed_total", "URLs skipped by robots.txt"),
    "extraction_errors": ("jobcrawl_extraction_errors_total", "Pages that could not be parsed"),
    "records_persisted": ("jobcrawl_jobs_persisted_total", "Job records written to the sink"),
    "records_rejected": ("jobcrawl_jobs_rejected_total", "Job records dropped before or during persistence"),
    "persist_errors": ("jobcrawl_persist_errors_total", "Failed persistence batches"),
}


class PrometheusExporter:
    def __init__(self, metrics: Metrics, port: int = 8000, registry: CollectorRegistry | None = None) -> None:
        self.metrics = metrics
        self.port = port
        self.registry = registry or CollectorRegistry()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

        self.counters = {
            field: Counter(name, doc, registry=self.registry) for field, (name, doc) in _COUNTERS.items()
        }
        self.pages_per_second = Gauge(
            "jobcrawl_pages_per_second", "Current crawl rate in pages per second", registry=self.registry
        )
        self.avg_fetch_duration_seconds = Gauge(
            "jobcrawl_avg_fetch_duration_seconds", "Average fetch duration in seconds", registry=self.registry
        )
        self._last = Totals()

    def start(self) -> None:
        start_http_server(self.port, registry=self.registry)
        logger.info("Prometheus metrics server started on port %d", self.port)
        self._thread = threading.Thread(target=self._update_loop, name="prometheus-updater", daemon=True)
        self._thread.start()

    def _update_loop(self) -> None:
        while not self._stop_event.is_set():
            self.update()
            self._stop_event.wait(5.0)

    def update(self) -> None:
        totals, elapsed = self.metrics.snapshot()
        for field, counter in self.counters.items():
            delta = getattr(totals, field) - getattr(self._last, field)
            if delta > 0:
                counter.inc(delta)
        self.pages_per_second.set(totals.pages / elapsed)
        fetched = totals.pages + totals.fetch_errors
        if fetched > 0:
            self.avg_fetch_duration_seconds.set(totals.fetch_ms_sum / fetched / 1000.0)
        self._last = totals

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
        self.update()
