from dataclasses import dataclass
from typing import Iterable, List, Optional
from urllib.parse import urljoin, urldefrag, urlparse

from bs4 import BeautifulSoup

from .normalize import clean_email, make_absolute_url, standardize_date
from .types import ExtractionError, ExtractionResult, JobRecord


class UrlTools:
    @staticmethod
    def normalize_start(urls: Iterable[str]) -> List[str]:
        normalized: List[str] = []
        for u in urls:
            if not u:
                continue
            parsed = urlparse(u)
            if not parsed.scheme:
                u = "https://" + u
            u, _ = urldefrag(u)
            normalized.append(u)
        return normalized

    @staticmethod
    def normalize_link(base_url: str, href: str) -> Optional[str]:
        if not href:
            return None
        href = href.strip()
        if href.startswith(("mailto:", "javascript:", "tel:", "#")):
            return None
        absolute = urljoin(base_url, href)
        absolute, _ = urldefrag(absolute)
        parsed = urlparse(absolute)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return None
        return absolute

    @staticmethod
    def is_allowed_domain(url: str, allowed_domains: Iterable[str]) -> bool:
        allowed_domains = list(allowed_domains)
        if not allowed_domains:
            return True
        host = (urlparse(url).hostname or "").lower()
        return any(host == d or host.endswith("." + d) for d in allowed_domains)


@dataclass(frozen=True)
class JobSelectors:
    """CSS selectors locating a job listing and its fields on a page."""

    listing: str = "div.job-listing"
    title: str = "h2.job-title"
    location: str = "span.job-location"
    salary: str = "span.job-salary"
    date_posted: str = "span.date-posted"
    due_date: str = "span.due-date"
    email: str = "a.email-address"
    application_link: str = "a.application-link"


class JobPageExtractor:
    def __init__(self, selectors: Optional[JobSelectors] = None):
        self.selectors = selectors or JobSelectors()

    @staticmethod
    def _text(node, selector: str) -> str:
        el = node.select_one(selector)
        return el.get_text(strip=True) if el else ""

    def _record(self, listing, page_url: str) -> JobRecord:
        s = self.selectors
        link_el = listing.select_one(s.application_link)
        link = ""
        if link_el is not None:
            link = link_el.get("href") or link_el.get_text(strip=True)
        email_el = listing.select_one(s.email)
        email = ""
        if email_el is not None:
            email = email_el.get_text(strip=True) or email_el.get("href") or ""
        return JobRecord(
            title=self._text(listing, s.title),
            location=self._text(listing, s.location),
            salary=self._text(listing, s.salary),
            date_posted=standardize_date(self._text(listing, s.date_posted)),
            due_date=standardize_date(self._text(listing, s.due_date)),
            email=clean_email(email),
            application_link=make_absolute_url(page_url, link),
        )

    def extract(self, body: str, page_url: str) -> ExtractionResult:
        try:
            soup = BeautifulSoup(body, "html.parser")
            records = [self._record(listing, page_url) for listing in soup.select(self.selectors.listing)]
        except Exception as exc:
            raise ExtractionError(f"unparseable page {page_url}: {exc}") from exc
        links: List[str] = []
        for a in soup.find_all("a", href=True):
            normalized = UrlTools.normalize_link(page_url, a["href"])
            if normalized:
                links.append(normalized)
        return ExtractionResult(records=records, links=links)
