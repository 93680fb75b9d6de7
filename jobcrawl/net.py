import logging
from typing import Optional

import urllib3
from urllib3 import exceptions as urllib3_exc
from urllib3.util.retry import Retry

from .types import FetchResult, PermanentFetchError, TransientFetchError


RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
TEXT_CONTENT_TYPES = ("text/html", "text/plain", "application/xhtml+xml")

_TRANSIENT_REASONS = (
    urllib3_exc.TimeoutError,
    urllib3_exc.NewConnectionError,
    urllib3_exc.ProtocolError,
    urllib3_exc.ProxyError,
)


class HttpClient:
    def __init__(
        self,
        user_agent: str,
        request_timeout: float,
        concurrency: int,
        max_connections: int = 16,
        max_redirects: int = 3,
    ):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.http = urllib3.PoolManager(
            num_pools=max(8, concurrency),
            maxsize=max_connections,
            headers={
                "User-Agent": user_agent,
                "Accept": "text/html,*/*;q=0.8",
                "Accept-Encoding": "gzip, deflate",
            },
            # Only redirects are followed here; RetryPolicy owns retries.
            retries=Retry(
                total=None,
                connect=0,
                read=0,
                status=0,
                other=0,
                redirect=max_redirects,
                raise_on_redirect=True,
                raise_on_status=False,
            ),
        )

    def _timeout(self, timeout: Optional[float]) -> urllib3.Timeout:
        read = timeout if timeout is not None else self.request_timeout
        return urllib3.Timeout(connect=min(5.0, read), read=read)

    def fetch(self, url: str, timeout: Optional[float] = None) -> FetchResult:
        try:
            response = self.http.request(
                "GET",
                url,
                timeout=self._timeout(timeout),
                preload_content=True,
            )
        except urllib3_exc.MaxRetryError as exc:
            if isinstance(exc.reason, _TRANSIENT_REASONS):
                raise TransientFetchError(url, str(exc.reason)) from exc
            raise PermanentFetchError(url, str(exc.reason or exc)) from exc
        except _TRANSIENT_REASONS as exc:
            raise TransientFetchError(url, str(exc)) from exc
        except urllib3_exc.HTTPError as exc:
            raise PermanentFetchError(url, str(exc)) from exc

        if response.status in RETRYABLE_STATUSES:
            raise TransientFetchError(url, f"HTTP {response.status}")
        content_type = response.headers.get("Content-Type", "") or ""
        body = response.data or b""
        text = ""
        if not content_type or any(t in content_type for t in TEXT_CONTENT_TYPES):
            text = body.decode("utf-8", errors="ignore")
        final_url = response.geturl() or url
        logging.debug("GET %s -> %d (%d bytes)", url, response.status, len(body))
        return FetchResult(
            status=response.status,
            content_type=content_type,
            text=text,
            size_bytes=len(body),
            url=final_url,
        )

    def close(self) -> None:
        self.http.clear()
