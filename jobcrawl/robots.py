"""robots.txt handling.

Only the ``User-agent: *`` scope is honoured and only ``Disallow`` prefixes
are enforced. A policy that cannot be fetched or parsed allows everything.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import urljoin, urlparse

from .types import FetchError, HttpClientProtocol


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicySnapshot:
    disallowed: Tuple[str, ...] = ()
    malformed: bool = False

    def is_allowed(self, url: str) -> bool:
        parsed = urlparse(url)
        path = parsed.path or "/"
        if parsed.query:
            path += "?" + parsed.query
        for prefix in self.disallowed:
            if path.startswith(prefix):
                return False
        return True


ALLOW_ALL = PolicySnapshot()


def parse_policy(text: str) -> PolicySnapshot:
    disallowed = []
    active = False
    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        if ":" not in line:
            return PolicySnapshot(malformed=True)
        key, _, value = line.partition(":")
        key = key.strip().lower()
        value = value.strip()
        if key == "user-agent":
            active = value == "*"
        elif key == "disallow" and active and value:
            disallowed.append(value)
    return PolicySnapshot(disallowed=tuple(disallowed))


class RobotsCache:
    def __init__(self, user_agent: str, http: HttpClientProtocol, timeout: float = 10.0):
        self.user_agent = user_agent
        self.http = http
        self.timeout = timeout
        self._cache: Dict[str, PolicySnapshot] = {}
        self._lock = threading.Lock()

    def _fetch_policy(self, root: str) -> PolicySnapshot:
        robots_url = urljoin(root, "/robots.txt")
        try:
            response = self.http.fetch(robots_url, self.timeout)
        except FetchError as exc:
            logger.info("robots.txt unavailable for %s (%s), allowing all", root, exc)
            return ALLOW_ALL
        if response.status >= 400:
            logger.info("robots.txt returned %d for %s, allowing all", response.status, root)
            return ALLOW_ALL
        snapshot = parse_policy(response.text)
        if snapshot.malformed:
            logger.warning("Malformed robots.txt at %s, allowing all", robots_url)
            return ALLOW_ALL
        logger.debug("Loaded %d disallow rules from %s", len(snapshot.disallowed), robots_url)
        return snapshot

    def policy_for(self, url: str) -> PolicySnapshot:
        parsed = urlparse(url)
        root = f"{parsed.scheme}://{parsed.netloc}"
        snapshot: Optional[PolicySnapshot] = self._cache.get(root)
        if snapshot is not None:
            return snapshot
        with self._lock:
            snapshot = self._cache.get(root)
            if snapshot is None:
                snapshot = self._fetch_policy(root)
                self._cache[root] = snapshot
        return snapshot

    def can_fetch(self, url: str) -> bool:
        return self.policy_for(url).is_allowed(url)
