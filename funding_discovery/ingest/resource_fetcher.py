"""
Fetch opportunity webpages with caching, header fallback and rate limiting.
"""

import asyncio
import logging
import threading
import time
from typing import Optional
from urllib.parse import urlparse

import requests

from funding_discovery.core.errors import ProviderError
from funding_discovery.storage.fetch_cache import FetchCache

logger = logging.getLogger(__name__)

PRIMARY_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (compatible; FundingDiscoveryBot/1.0; +https://github.com/funding-discovery)',
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.5',
}

# Some hosts reject anything that identifies as a bot
FALLBACK_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.5',
    'Accept-Encoding': 'gzip, deflate',
    'DNT': '1',
    'Connection': 'keep-alive',
    'Upgrade-Insecure-Requests': '1',
}

RETRY_WITH_FALLBACK_STATUSES = {403, 406, 429, 503}

HTML_CONTENT_TYPES = ('text/html', 'application/xhtml+xml')


class ResourceFetcher:
    """Fetch opportunity pages with caching and per-domain rate limiting."""

    def __init__(self, cache: Optional[FetchCache] = None, timeout: float = 15.0,
                 min_interval: float = 1.0, session: Optional[requests.Session] = None):
        """
        Args:
            cache: Optional page cache
            timeout: Per-request timeout in seconds
            min_interval: Minimum seconds between requests to the same domain
            session: Injected session (tests)
        """
        self.cache = cache
        self.timeout = timeout
        self.min_interval = min_interval
        self.session = session or requests.Session()
        self.last_request_time = {}
        self._lock = threading.Lock()

    def fetch_html(self, url: str) -> str:
        """
        Fetch a webpage's HTML.

        Tries the primary header set first and retries once with generic
        browser headers when the host rejects it.

        Raises:
            ProviderError: on network failure, timeout, non-2xx or non-HTML
        """
        if self.cache:
            cached = self.cache.get(url)
            if cached and cached.get('content_type') == 'text/html':
                logger.debug(f"Webpage cache hit: {url}")
                return cached['content']

        self._rate_limit(url)

        response = self._get(url, PRIMARY_HEADERS)
        if response.status_code in RETRY_WITH_FALLBACK_STATUSES:
            logger.debug(f"Primary headers rejected ({response.status_code}) for {url}, retrying")
            response = self._get(url, FALLBACK_HEADERS)

        if response.status_code >= 400:
            raise ProviderError("fetch", f"HTTP {response.status_code} for {url}")

        content_type = response.headers.get('content-type', '').lower()
        if content_type and not any(t in content_type for t in HTML_CONTENT_TYPES):
            raise ProviderError("fetch", f"Not HTML: {url} ({content_type})")

        html = response.text

        if self.cache:
            self.cache.set(url, html, 'text/html')

        logger.info(f"Fetched webpage: {url}")
        return html

    async def afetch_html(self, url: str) -> str:
        """`fetch_html` run in a worker thread."""
        return await asyncio.to_thread(self.fetch_html, url)

    def _get(self, url: str, headers: dict) -> requests.Response:
        try:
            return self.session.get(url, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise ProviderError("fetch", f"Timed out after {self.timeout}s: {url}") from e
        except requests.RequestException as e:
            raise ProviderError("fetch", f"{url}: {e}") from e

    def _rate_limit(self, url: str):
        """
        Apply rate limiting per domain.

        Each caller reserves the next free slot for its domain under the
        lock and then sleeps outside it, so worker threads hitting the same
        host stay `min_interval` apart.
        """
        domain = urlparse(url).netloc

        with self._lock:
            now = time.time()
            last = self.last_request_time.get(domain)
            start = now if last is None else max(now, last + self.min_interval)
            self.last_request_time[domain] = start

        if start > now:
            time.sleep(start - now)
