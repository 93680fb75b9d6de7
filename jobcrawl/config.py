from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlparse


DEFAULT_USER_AGENT = "jobcrawl/1.0 (+https://example.com; contact: crawler@example.com)"


@dataclass(frozen=True)
class CrawlConfig:
    seed_url: str
    max_depth: int = 5
    worker_count: int = 8
    max_retries: int = 3
    request_timeout: float = 10.0
    retry_backoff: float = 0.5
    retry_backoff_factor: float = 2.0
    retry_backoff_max: float = 8.0
    max_redirects: int = 3
    max_connections: int = 16
    user_agent: str = DEFAULT_USER_AGENT
    obey_robots_txt: bool = True
    allowed_domains: Tuple[str, ...] = ()
    sqlite_path: str = "jobs.db"
    jsonl_path: Optional[str] = None
    metrics_interval: float = 10.0

    def validate(self) -> None:
        if not urlparse(self.seed_url).netloc:
            raise ValueError(f"seed URL has no host: {self.seed_url!r}")
        if self.max_depth < 1:
            raise ValueError("max_depth must be >= 1")
        if self.worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")
        if self.retry_backoff < 0 or self.retry_backoff_factor < 1.0:
            raise ValueError("retry backoff must be >= 0 with a factor >= 1")

    def resolved_domains(self) -> Tuple[str, ...]:
        """Allowed domains, defaulting to the seed's host."""
        if self.allowed_domains:
            return tuple(d.lower().lstrip(".") for d in self.allowed_domains)
        host = urlparse(self.seed_url).hostname or ""
        return (host.lower(),) if host else ()
