import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, List, Optional

from .config import CrawlConfig
from .frontier import Frontier
from .metrics import Metrics, StatsLogger
from .net import HttpClient
from .parsing import JobPageExtractor, UrlTools
from .retry import RetryPolicy
from .robots import RobotsCache
from .storage import PersistenceCoordinator, open_sink
from .types import (
    CrawlReport,
    ExtractionError,
    ExtractionResult,
    ExtractorProtocol,
    FetchError,
    FetchResult,
    FrontierEntry,
    HttpClientProtocol,
    JobSink,
    PermanentFetchError,
    PersistenceError,
    StartupError,
    TransientFetchError,
)


# The seed page is level 1; max_depth counts pages along a path, seed included.
SEED_DEPTH = 1


class Crawler:
    def __init__(
        self,
        config: CrawlConfig,
        http_client: HttpClientProtocol | None = None,
        extractor: ExtractorProtocol | None = None,
        sink: JobSink | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        config.validate()
        self.config = config
        self.seed_url = UrlTools.normalize_start([config.seed_url])[0]
        self.allowed_domains = config.resolved_domains()
        owns_http = http_client is None
        if owns_http:
            try:
                http_client = HttpClient(
                    config.user_agent,
                    config.request_timeout,
                    config.worker_count,
                    config.max_connections,
                    config.max_redirects,
                )
            except Exception as exc:
                raise StartupError(f"cannot create HTTP transport: {exc}") from exc
        self.http = http_client
        self.extractor = extractor or JobPageExtractor()
        self.robots = RobotsCache(config.user_agent, self.http, config.request_timeout)
        self.retry = RetryPolicy(
            config.max_retries,
            config.retry_backoff,
            config.retry_backoff_factor,
            config.retry_backoff_max,
            sleep=sleep,
        )
        self.frontier = Frontier(self.seed_url, config.max_depth)
        try:
            self.persistence = PersistenceCoordinator(sink if sink is not None else open_sink(config))
        except StartupError:
            if owns_http:
                self.http.close()
            raise
        self.metrics = Metrics()
        self.stats_thread: Optional[StatsLogger] = None
        self._closed = False
        self.frontier.try_enqueue(self.seed_url, SEED_DEPTH)

    def request_shutdown(self) -> None:
        """Begin draining: queued work is dropped, in-flight pages finish."""
        if self.frontier.draining:
            return
        discarded = self.frontier.drain()
        logging.warning("Shutdown requested; draining (%d queued URLs discarded)", discarded)

    def _fetch(self, url: str) -> FetchResult:
        def on_retry(attempt: int, exc: TransientFetchError, delay: float) -> None:
            self.metrics.record_retry()
            logging.info("Attempt %d for %s failed (%s); retrying in %.2fs", attempt, url, exc.reason, delay)

        def attempt() -> FetchResult:
            result = self.http.fetch(url, self.config.request_timeout)
            if not 200 <= result.status < 300:
                raise PermanentFetchError(url, f"HTTP {result.status}")
            return result

        return self.retry.call(attempt, on_retry=on_retry)

    def _extract(self, entry: FrontierEntry, response: FetchResult) -> ExtractionResult:
        if not response.text:
            return ExtractionResult()
        try:
            return self.extractor.extract(response.text, response.url or entry.url)
        except ExtractionError as exc:
            self.metrics.record_extraction_error()
            logging.warning("Extraction failed for %s: %s", entry.url, exc)
            return ExtractionResult()

    def _enqueue_links(self, page_url: str, links: Iterable[str], current_depth: int) -> int:
        next_depth = current_depth + 1
        if next_depth > self.config.max_depth:
            return 0
        added = 0
        for link in links:
            absolute = UrlTools.normalize_link(page_url, link)
            if absolute and UrlTools.is_allowed_domain(absolute, self.allowed_domains):
                if self.frontier.try_enqueue(absolute, next_depth):
                    added += 1
        return added

    def _persist(self, entry: FrontierEntry, records: List) -> None:
        try:
            written = self.persistence.append_records(records, entry.url)
        except PersistenceError as exc:
            self.metrics.record_persist_error(len(records))
            logging.error("Could not persist %d jobs from %s: %s", len(records), entry.url, exc)
            return
        self.metrics.record_persist(written, len(records) - written)

    def process(self, entry: FrontierEntry) -> None:
        """Fetch, extract, enqueue and persist one frontier entry."""
        if self.config.obey_robots_txt and not self.robots.can_fetch(entry.url):
            logging.debug("Disallowed by robots.txt: %s", entry.url)
            self.metrics.record_disallowed()
            return

        t0 = time.perf_counter()
        try:
            response = self._fetch(entry.url)
        except FetchError as exc:
            self.metrics.record_fetch(False, 0, (time.perf_counter() - t0) * 1000.0)
            kind = "transient, retries exhausted" if isinstance(exc, TransientFetchError) else "permanent"
            logging.warning("Fetch failed for %s (%s): %s", entry.url, kind, exc.reason)
            return
        self.metrics.record_fetch(True, response.size_bytes, (time.perf_counter() - t0) * 1000.0)

        result = self._extract(entry, response)
        added = self._enqueue_links(response.url or entry.url, result.links, entry.depth)
        self._persist(entry, result.records)
        logging.debug(
            "Processed %s (depth %d): %d jobs, %d/%d new links",
            entry.url, entry.depth, len(result.records), added, len(result.links),
        )

    def worker(self) -> None:
        while True:
            entry = self.frontier.dequeue()
            if entry is None:
                return
            try:
                self.process(entry)
            except Exception:
                logging.exception("Unexpected error while processing %s", entry.url)
            finally:
                # Only now can no further work originate from this entry.
                self.frontier.mark_done()

    def report(self) -> CrawlReport:
        totals, _ = self.metrics.snapshot()
        return CrawlReport(
            pages_fetched=totals.pages,
            fetch_errors=totals.fetch_errors,
            disallowed=totals.disallowed,
            extraction_errors=totals.extraction_errors,
            records_persisted=totals.records_persisted,
            records_rejected=totals.records_rejected,
            persist_errors=totals.persist_errors,
            dequeued=self.frontier.dequeued,
            discovered=self.frontier.discovered,
            drained=self.frontier.draining,
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.stats_thread:
            self.stats_thread.stop()
        self.persistence.close()
        close = getattr(self.http, "close", None)
        if callable(close):
            close()

    def run(self) -> CrawlReport:
        logging.info(
            "Starting crawl: seed %s, max depth %d, %d workers, allowed domains: %s",
            self.seed_url,
            self.config.max_depth,
            self.config.worker_count,
            ", ".join(self.allowed_domains) or "(any)",
        )
        if self.config.metrics_interval and self.config.metrics_interval > 0:
            self.stats_thread = StatsLogger(self.metrics, self.config.metrics_interval, logging.info)
            self.stats_thread.start()
        try:
            with ThreadPoolExecutor(
                max_workers=self.config.worker_count, thread_name_prefix="crawl-worker"
            ) as executor:
                futures = [executor.submit(self.worker) for _ in range(self.config.worker_count)]
                for future in as_completed(futures):
                    future.result()
        finally:
            self.close()
        report = self.report()
        logging.info(
            "Finished%s. Pages: %d, fetch errors: %d, disallowed: %d, jobs stored: %d, rejected: %d, persist errors: %d",
            " (drained)" if report.drained else "",
            report.pages_fetched,
            report.fetch_errors,
            report.disallowed,
            report.records_persisted,
            report.records_rejected,
            report.persist_errors,
        )
        return report
