#!/usr/bin/env python3
import argparse
import logging
import sys
from typing import List, Optional

from jobcrawl.config import CrawlConfig, DEFAULT_USER_AGENT
from jobcrawl.engine import Crawler
from jobcrawl.lifecycle import install_signal_handlers
from jobcrawl.prometheus_exporter import PrometheusExporter
from jobcrawl.types import StartupError


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Robots-friendly job listing crawler with SQLite output.")
    parser.add_argument("--seed", required=True, help="URL to start crawling from.")
    parser.add_argument("--max-depth", type=int, default=5, help="Maximum crawl depth; the seed page is level 1.")
    parser.add_argument("--workers", type=int, default=8, help="Number of concurrent workers.")
    parser.add_argument("--retries", type=int, default=3, help="Retries per URL after transient failures.")
    parser.add_argument("--timeout", type=float, default=10.0, help="Per-request timeout in seconds.")
    parser.add_argument("--backoff", type=float, default=0.5, help="Initial retry backoff in seconds.")
    parser.add_argument("--max-redirects", type=int, default=3, help="Redirects to follow per request.")
    parser.add_argument("--user-agent", default=DEFAULT_USER_AGENT, help="User-Agent header to send.")
    parser.add_argument(
        "--allowed-domain",
        dest="allowed_domains",
        nargs="+",
        default=None,
        help="Domains to follow links into (e.g., example.com). Defaults to the seed's host.",
    )
    parser.add_argument("--db", dest="sqlite_path", default="jobs.db", help="SQLite database for job records.")
    parser.add_argument("--jsonl", dest="jsonl_path", default=None, help="Write jobs to a JSONL file instead of SQLite.")
    parser.add_argument("--ignore-robots", action="store_true", help="Ignore robots.txt (not recommended).")
    parser.add_argument("--error-log", default="error.log", help="File that collects warnings and errors.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity.")
    parser.add_argument("--metrics-interval", type=float, default=10.0, help="Seconds between perf logs (0 to disable).")
    parser.add_argument("--max-connections", type=int, default=16, help="Max connections per pool for HTTP client.")
    parser.add_argument("--prometheus-port", type=int, default=0, help="Port for Prometheus metrics (0 to disable).")
    return parser.parse_args(argv)


def configure_logging(verbose: int, error_log: Optional[str]) -> None:
    log_level = logging.WARNING
    if verbose == 1:
        log_level = logging.INFO
    elif verbose >= 2:
        log_level = logging.DEBUG
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(threadName)s %(message)s",
    )
    if error_log:
        handler = logging.FileHandler(error_log, mode="a", encoding="utf-8")
        handler.setLevel(logging.WARNING)
        handler.setFormatter(logging.Formatter("%(asctime)s Error: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
        logging.getLogger().addHandler(handler)


def build_config(args: argparse.Namespace) -> CrawlConfig:
    seed = args.seed if "://" in args.seed else "https://" + args.seed
    return CrawlConfig(
        seed_url=seed,
        max_depth=max(1, args.max_depth),
        worker_count=max(1, args.workers),
        max_retries=max(0, args.retries),
        request_timeout=max(1.0, args.timeout),
        retry_backoff=max(0.0, args.backoff),
        max_redirects=max(0, args.max_redirects),
        max_connections=max(1, args.max_connections),
        user_agent=args.user_agent,
        obey_robots_txt=not args.ignore_robots,
        allowed_domains=tuple(d.lower() for d in args.allowed_domains or ()),
        sqlite_path=args.sqlite_path,
        jsonl_path=args.jsonl_path,
        metrics_interval=max(0.0, args.metrics_interval),
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose, args.error_log)

    try:
        crawler = Crawler(build_config(args))
    except (StartupError, ValueError) as exc:
        logging.critical("Cannot start crawl: %s", exc)
        return 1

    exporter = None
    if args.prometheus_port > 0:
        exporter = PrometheusExporter(crawler.metrics, port=args.prometheus_port)
        try:
            exporter.start()
        except OSError as exc:
            logging.critical("Cannot start metrics server on port %d: %s", args.prometheus_port, exc)
            crawler.close()
            return 1
        logging.info("Prometheus metrics available at http://0.0.0.0:%d/metrics", args.prometheus_port)

    restore = install_signal_handlers(crawler)
    try:
        report = crawler.run()
    except KeyboardInterrupt:
        logging.critical("Interrupted again; aborting")
        return 130
    finally:
        restore()
        if exporter:
            exporter.stop()

    print(
        f"pages={report.pages_fetched} errors={report.fetch_errors} disallowed={report.disallowed} "
        f"jobs={report.records_persisted} rejected={report.records_rejected}"
        + (" (drained)" if report.drained else "")
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
