from dataclasses import dataclass, field, fields
from typing import Iterable, List, Optional, Protocol, Tuple


@dataclass(frozen=True)
class FetchResult:
    status: int
    content_type: str
    text: str
    size_bytes: int
    url: str = ""


@dataclass(frozen=True)
class FrontierEntry:
    url: str
    depth: int


@dataclass(frozen=True)
class JobRecord:
    title: str = ""
    location: str = ""
    salary: str = ""
    date_posted: str = ""
    due_date: str = ""
    email: str = ""
    application_link: str = ""

    REQUIRED = ("title", "application_link")

    def missing_required(self) -> List[str]:
        return [name for name in self.REQUIRED if not getattr(self, name)]

    def as_row(self) -> Tuple[str, ...]:
        return tuple(getattr(self, f.name) for f in fields(self))

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ExtractionResult:
    records: List[JobRecord] = field(default_factory=list)
    links: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CrawlReport:
    pages_fetched: int
    fetch_errors: int
    disallowed: int
    extraction_errors: int
    records_persisted: int
    records_rejected: int
    persist_errors: int
    dequeued: int
    discovered: int
    drained: bool


class CrawlError(Exception):
    pass


class FetchError(CrawlError):
    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class TransientFetchError(FetchError):
    """Network or timeout failure; worth retrying."""


class PermanentFetchError(FetchError):
    """Response that will not improve on retry (4xx, redirect loop, ...)."""


class ExtractionError(CrawlError):
    pass


class PersistenceError(CrawlError):
    pass


class StartupError(CrawlError):
    pass


class HttpClientProtocol(Protocol):
    def fetch(self, url: str, timeout: Optional[float] = None) -> FetchResult: ...


class ExtractorProtocol(Protocol):
    def extract(self, body: str, page_url: str) -> ExtractionResult: ...


class JobSink(Protocol):
    def ensure_schema(self) -> None: ...

    def append(self, records: Iterable[JobRecord], page_url: str = "") -> int: ...

    def close(self) -> None: ...
