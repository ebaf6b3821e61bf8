"""
Web search providers.

- BraveSearchProvider: Brave Search JSON API (needs BRAVE_SEARCH_API_KEY)
- DuckDuckGoHtmlProvider: DuckDuckGo's HTML endpoint, no key required

A ProviderChain tries providers in order. A provider that raises or
returns nothing hands over to the next; if all fail the chain raises
ProviderError and the orchestrator skips the query.
"""

import logging
from typing import List, Optional, Sequence
from urllib.parse import parse_qs, unquote, urlparse

import requests
from bs4 import BeautifulSoup

from funding_discovery.core.domain_models import SearchResult
from funding_discovery.core.errors import ProviderError


logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


class BraveSearchProvider:
    """Brave Search web results."""

    name = "brave"
    endpoint = "https://api.search.brave.com/res/v1/web/search"

    def __init__(self, api_key: str, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def search(self, query: str, count: int = 10) -> List[SearchResult]:
        try:
            response = self.session.get(
                self.endpoint,
                headers={
                    "Accept": "application/json",
                    "X-Subscription-Token": self.api_key,
                },
                params={"q": query, "count": min(count, 20)},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ProviderError(self.name, str(e)) from e

        results = []
        for position, item in enumerate(payload.get("web", {}).get("results", []), 1):
            url = item.get("url")
            if not url:
                continue
            results.append(SearchResult(
                title=item.get("title", "").strip(),
                url=url,
                snippet=BeautifulSoup(item.get("description", ""), "html.parser").get_text(" ", strip=True),
                provider=self.name,
                position=position,
                published_date=item.get("page_age") or item.get("age"),
            ))
        return results


class DuckDuckGoHtmlProvider:
    """Results scraped from html.duckduckgo.com."""

    name = "duckduckgo"
    endpoint = "https://html.duckduckgo.com/html/"

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        self.timeout = timeout

    def search(self, query: str, count: int = 10) -> List[SearchResult]:
        try:
            response = self.session.post(self.endpoint, data={"q": query}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ProviderError(self.name, str(e)) from e

        return self.parse_results(response.text, count)

    def parse_results(self, html: str, count: int = 10) -> List[SearchResult]:
        soup = BeautifulSoup(html, "html.parser")
        results = []

        for block in soup.select("div.result"):
            if "result--ad" in (block.get("class") or []):
                continue

            link = block.select_one("a.result__a")
            if not link or not link.get("href"):
                continue

            url = self._unwrap_redirect(link["href"])
            if not url.startswith("http"):
                continue

            snippet_el = block.select_one(".result__snippet")
            results.append(SearchResult(
                title=link.get_text(" ", strip=True),
                url=url,
                snippet=snippet_el.get_text(" ", strip=True) if snippet_el else "",
                provider=self.name,
                position=len(results) + 1,
            ))

            if len(results) >= count:
                break

        return results

    @staticmethod
    def _unwrap_redirect(href: str) -> str:
        """DuckDuckGo wraps targets as //duckduckgo.com/l/?uddg=<encoded url>."""
        if href.startswith("//"):
            href = "https:" + href
        parsed = urlparse(href)
        if parsed.netloc.endswith("duckduckgo.com") and parsed.path.startswith("/l/"):
            target = parse_qs(parsed.query).get("uddg")
            if target:
                return unquote(target[0])
        return href


class ProviderChain:
    """Try search providers in order until one returns results."""

    def __init__(self, providers: Sequence):
        self.providers = list(providers)

    @classmethod
    def default(cls, brave_api_key: Optional[str] = None) -> "ProviderChain":
        providers = []
        if brave_api_key:
            providers.append(BraveSearchProvider(brave_api_key))
        providers.append(DuckDuckGoHtmlProvider())
        return cls(providers)

    def search(self, query: str, count: int = 10) -> List[SearchResult]:
        errors = []
        for provider in self.providers:
            try:
                results = provider.search(query, count=count)
            except ProviderError as e:
                logger.warning(f"Search provider {provider.name} failed for {query!r}: {e}")
                errors.append(str(e))
                continue

            if results:
                return results
            logger.debug(f"Search provider {provider.name} returned no results for {query!r}")

        if errors:
            raise ProviderError("search", "; ".join(errors))
        return []
