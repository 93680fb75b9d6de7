import sqlite3
import threading
from typing import Dict, List

import pytest

from jobcrawl.config import CrawlConfig
from jobcrawl import engine as engine_module
from jobcrawl.engine import Crawler
from jobcrawl.metrics import Metrics
from jobcrawl.parsing import JobPageExtractor, JobSelectors
from jobcrawl.types import (
    ExtractionError,
    FetchResult,
    HttpClientProtocol,
    PersistenceError,
    StartupError,
    TransientFetchError,
)


ROOT = "https://example.com"


def page(name: str, links: List[str], jobs: int = 0) -> str:
    listings = "".join(
        f'<div class="job-listing"><h2 class="job-title">{name} job {k}</h2>'
        f'<span class="date-posted">01/02/2024</span>'
        f'<a class="application-link" href="https://apply.example.org/{name}/{k}">Apply</a></div>'
        for k in range(jobs)
    )
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    return f"<html><head><title>{name}</title></head><body>{listings}{anchors}</body></html>"


class GraphHttp(HttpClientProtocol):
    """Serves a fixed link graph and records every fetched URL."""

    def __init__(self, pages: Dict[str, str], robots: str | None = None):
        self.pages = pages
        self.robots = robots
        self.fetched: List[str] = []
        self._lock = threading.Lock()

    def fetch(self, url: str, timeout=None) -> FetchResult:
        if url.endswith("/robots.txt"):
            if self.robots is None:
                return FetchResult(status=404, content_type="text/plain", text="", size_bytes=0)
            return FetchResult(status=200, content_type="text/plain", text=self.robots, size_bytes=len(self.robots))
        with self._lock:
            self.fetched.append(url)
        html = self.pages.get(url)
        if html is None:
            return FetchResult(status=404, content_type="text/html", text="", size_bytes=0)
        return FetchResult(status=200, content_type="text/html", text=html, size_bytes=len(html.encode()))


def config(tmp_path, **overrides) -> CrawlConfig:
    values = dict(
        seed_url=f"{ROOT}/a",
        max_depth=5,
        worker_count=2,
        max_retries=2,
        retry_backoff=0.0,
        obey_robots_txt=False,
        sqlite_path=str(tmp_path / "jobs.db"),
        metrics_interval=0.0,
    )
    values.update(overrides)
    return CrawlConfig(**values)


def test_example_graph_respects_depth_and_cycles(tmp_path):
    http = GraphHttp({
        f"{ROOT}/a": page("a", ["/b", "/c"]),
        f"{ROOT}/b": page("b", ["/a", "/d"]),
        f"{ROOT}/c": page("c", []),
        f"{ROOT}/d": page("d", []),
    })
    crawler = Crawler(config(tmp_path, max_depth=2), http_client=http)
    report = crawler.run()
    assert sorted(http.fetched) == [f"{ROOT}/a", f"{ROOT}/b", f"{ROOT}/c"]
    assert report.dequeued == 3
    assert report.discovered == 3  # /d was never enqueued
    assert not report.drained


def test_self_loop_terminates_after_one_dequeue(tmp_path):
    http = GraphHttp({f"{ROOT}/a": page("a", ["/a", "#top", f"{ROOT}/a"])})
    crawler = Crawler(config(tmp_path, worker_count=4), http_client=http)
    report = crawler.run()
    assert report.dequeued == 1
    assert http.fetched == [f"{ROOT}/a"]


def tree(k: int) -> Dict[str, str]:
    pages = {}
    for i in range(k):
        children = [f"/p/{c}" for c in (2 * i + 1, 2 * i + 2) if c < k]
        pages[f"{ROOT}/p/{i}"] = page(f"p{i}", children + ["/p/0"], jobs=3)
    return pages


@pytest.mark.parametrize("workers", [1, 8])
def test_every_page_dequeued_exactly_once(tmp_path, workers):
    k = 40
    http = GraphHttp(tree(k))
    crawler = Crawler(config(tmp_path, seed_url=f"{ROOT}/p/0", worker_count=workers, max_depth=10), http_client=http)
    report = crawler.run()
    assert report.dequeued == k
    assert len(http.fetched) == k
    assert set(http.fetched) == set(http.pages)
    assert report.records_persisted == 3 * k

    conn = sqlite3.connect(str(tmp_path / "jobs.db"))
    rows = conn.execute("SELECT title, date_posted, application_link FROM jobs").fetchall()
    conn.close()
    assert len(rows) == 3 * k
    for title, date_posted, link in rows:
        name, _, n = title.split(" ")
        assert date_posted == "2024-02-01"
        assert link == f"https://apply.example.org/{name}/{n}"


def test_disallowed_paths_are_never_fetched(tmp_path):
    http = GraphHttp(
        {
            f"{ROOT}/a": page("a", ["/private/secret", "/public"]),
            f"{ROOT}/private/secret": page("secret", []),
            f"{ROOT}/public": page("public", []),
        },
        robots="User-agent: *\nDisallow: /private\n",
    )
    report = Crawler(config(tmp_path, obey_robots_txt=True), http_client=http).run()
    assert f"{ROOT}/private/secret" not in http.fetched
    assert f"{ROOT}/public" in http.fetched
    assert report.disallowed == 1


def test_malformed_robots_allows_everything(tmp_path):
    http = GraphHttp(
        {f"{ROOT}/a": page("a", ["/private"]), f"{ROOT}/private": page("p", [])},
        robots="<html>oops</html>",
    )
    report = Crawler(config(tmp_path, obey_robots_txt=True), http_client=http).run()
    assert f"{ROOT}/private" in http.fetched
    assert report.disallowed == 0


def test_links_outside_allowed_domains_are_skipped(tmp_path):
    http = GraphHttp({f"{ROOT}/a": page("a", ["https://elsewhere.org/x", "/b"]), f"{ROOT}/b": page("b", [])})
    Crawler(config(tmp_path), http_client=http).run()
    assert "https://elsewhere.org/x" not in http.fetched
    assert f"{ROOT}/b" in http.fetched


class AlwaysTransient(HttpClientProtocol):
    def __init__(self):
        self.attempts = 0
        self._lock = threading.Lock()

    def fetch(self, url, timeout=None):
        with self._lock:
            self.attempts += 1
        raise TransientFetchError(url, "connection reset")


def test_retry_exhaustion_does_not_crash_the_pool(tmp_path):
    http = AlwaysTransient()
    sleeps = []
    crawler = Crawler(config(tmp_path, max_retries=3, retry_backoff=0.25, worker_count=4), http_client=http, sleep=sleeps.append)
    report = crawler.run()
    assert http.attempts == 4
    assert sleeps == sorted(sleeps) and len(sleeps) == 3
    assert report.fetch_errors == 1
    assert report.pages_fetched == 0
    totals, _ = crawler.metrics.snapshot()
    assert totals.retries == 3


def test_error_statuses_are_not_retried(tmp_path):
    http = GraphHttp({f"{ROOT}/a": page("a", ["/missing"])})
    report = Crawler(config(tmp_path), http_client=http).run()
    assert http.fetched.count(f"{ROOT}/missing") == 1
    assert report.fetch_errors == 1
    assert report.pages_fetched == 1


class BrokenExtractor:
    def extract(self, body, page_url):
        raise ExtractionError("bad markup")


def test_extraction_errors_yield_nothing(tmp_path):
    http = GraphHttp({f"{ROOT}/a": page("a", ["/b"], jobs=2), f"{ROOT}/b": page("b", [])})
    report = Crawler(config(tmp_path), http_client=http, extractor=BrokenExtractor()).run()
    assert http.fetched == [f"{ROOT}/a"]
    assert report.extraction_errors == 1
    assert report.records_persisted == 0


class FlakySink:
    def __init__(self):
        self.calls = 0
        self.closed = False

    def ensure_schema(self):
        pass

    def append(self, records, page_url=""):
        self.calls += 1
        raise PersistenceError("database is locked")

    def close(self):
        self.closed = True


def test_persistence_errors_do_not_stop_the_crawl(tmp_path):
    http = GraphHttp({f"{ROOT}/a": page("a", ["/b"], jobs=1), f"{ROOT}/b": page("b", [], jobs=2)})
    sink = FlakySink()
    report = Crawler(config(tmp_path), http_client=http, sink=sink).run()
    assert sorted(http.fetched) == [f"{ROOT}/a", f"{ROOT}/b"]
    assert report.persist_errors == 2
    assert report.records_rejected == 3
    assert sink.closed


def test_rerun_produces_independent_complete_results(tmp_path):
    pages = tree(15)
    first = Crawler(config(tmp_path, seed_url=f"{ROOT}/p/0", sqlite_path=str(tmp_path / "one.db")), http_client=GraphHttp(pages)).run()
    second = Crawler(config(tmp_path, seed_url=f"{ROOT}/p/0", sqlite_path=str(tmp_path / "two.db")), http_client=GraphHttp(pages)).run()
    assert first.dequeued == second.dequeued == 15
    for name in ("one.db", "two.db"):
        conn = sqlite3.connect(str(tmp_path / name))
        assert conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0] == 45
        conn.close()


class ShutdownOnSeed(GraphHttp):
    crawler = None

    def fetch(self, url, timeout=None):
        result = super().fetch(url, timeout)
        if url == f"{ROOT}/a":
            self.crawler.request_shutdown()
        return result


def test_shutdown_drains_in_flight_work_and_closes_sink(tmp_path):
    http = ShutdownOnSeed({f"{ROOT}/a": page("a", ["/b", "/c"], jobs=2), f"{ROOT}/b": page("b", [])})
    crawler = Crawler(config(tmp_path, worker_count=3), http_client=http)
    http.crawler = crawler
    report = crawler.run()
    assert report.drained
    assert report.dequeued == 1
    assert http.fetched == [f"{ROOT}/a"]
    # The in-flight seed still got persisted before the sink closed.
    assert report.records_persisted == 2
    conn = sqlite3.connect(str(tmp_path / "jobs.db"))
    assert conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0] == 2
    conn.close()


def test_metrics_records_fetches():
    m = Metrics()

    m.record_fetch(ok=True, bytes_read=1024, fetch_ms=50.0)
    totals, elapsed = m.snapshot()
    assert totals.pages == 1
    assert totals.bytes == 1024
    assert totals.fetch_errors == 0
    assert totals.fetch_ms_sum == 50.0
    assert elapsed > 0

    m.record_fetch(ok=False, bytes_read=0, fetch_ms=100.0)
    m.record_persist(3, rejected=1)
    totals, _ = m.snapshot()
    assert totals.pages == 1
    assert totals.fetch_errors == 1
    assert totals.fetch_ms_sum == 150.0
    assert totals.records_persisted == 3
    assert totals.records_rejected == 1


def test_invalid_config_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        Crawler(config(tmp_path, worker_count=0), http_client=GraphHttp({}))


def test_seed_is_the_first_level(tmp_path):
    http = GraphHttp({f"{ROOT}/a": page("a", ["/b"]), f"{ROOT}/b": page("b", [])})
    report = Crawler(config(tmp_path, max_depth=1), http_client=http).run()
    assert http.fetched == [f"{ROOT}/a"]
    assert report.discovered == 1


def test_bad_selectors_count_as_extraction_errors(tmp_path):
    http = GraphHttp({f"{ROOT}/a": page("a", ["/b"], jobs=1), f"{ROOT}/b": page("b", [])})
    extractor = JobPageExtractor(JobSelectors(title="h2["))
    report = Crawler(config(tmp_path), http_client=http, extractor=extractor).run()
    assert report.extraction_errors == 1
    assert report.records_persisted == 0


class RecordingHttpClient:
    instances = []

    def __init__(self, *args, **kwargs):
        self.closed = False
        RecordingHttpClient.instances.append(self)

    def fetch(self, url, timeout=None):
        raise AssertionError("no fetch expected")

    def close(self):
        self.closed = True


def test_startup_failure_closes_transport(tmp_path, monkeypatch):
    monkeypatch.setattr(engine_module, "HttpClient", RecordingHttpClient)
    RecordingHttpClient.instances.clear()
    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(StartupError):
        Crawler(config(tmp_path, sqlite_path=str(blocker / "jobs.db")))
    (client,) = RecordingHttpClient.instances
    assert client.closed
