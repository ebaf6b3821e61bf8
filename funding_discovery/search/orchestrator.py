"""
Run the expanded queries against the search providers.

Queries run one at a time with a short pause between calls. A provider
failure skips that query only. Excluded hosts are removed and results are
de-duplicated by normalised URL before anything leaves this stage.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from funding_discovery.config import DiscoveryConfig, PRIORITY_SOURCE_DOMAINS
from funding_discovery.core.domain_models import SearchIntent, SearchResult
from funding_discovery.core.errors import ProviderError
from funding_discovery.core.utils import host_matches, normalize_url


logger = logging.getLogger(__name__)


@dataclass
class SearchStrategy:
    """What the orchestrator actually ran, reported back to callers."""
    depth: str
    queries: List[str] = field(default_factory=list)
    site_queries: List[str] = field(default_factory=list)
    failed_queries: List[str] = field(default_factory=list)
    raw_results: int = 0
    excluded_results: int = 0
    duplicate_results: int = 0

    def to_dict(self) -> Dict:
        return {
            "depth": self.depth,
            "queriesRun": len(self.queries) + len(self.site_queries),
            "queries": list(self.queries),
            "siteQueries": list(self.site_queries),
            "failedQueries": list(self.failed_queries),
            "rawResults": self.raw_results,
            "excludedResults": self.excluded_results,
            "duplicateResults": self.duplicate_results,
        }


def exclude_domains(results: Sequence[SearchResult], domains) -> List[SearchResult]:
    """Drop results whose host is, or is a subdomain of, an excluded domain."""
    return [r for r in results if not host_matches(r.url, domains)]


def dedupe_results(results: Sequence[SearchResult]) -> List[SearchResult]:
    """Keep the first result for each normalised URL, preserving order."""
    seen = set()
    unique = []
    for result in results:
        key = normalize_url(result.url)
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(result)
    return unique


class SearchOrchestrator:
    """Issue search queries with provider fallback and rate limiting."""

    def __init__(self, providers, config: Optional[DiscoveryConfig] = None):
        """
        Args:
            providers: A ProviderChain (anything with `search(query, count)`)
            config: Run configuration
        """
        self.providers = providers
        self.config = config or DiscoveryConfig()

    def site_queries(self, intent: SearchIntent, seed: str,
                     config: Optional[DiscoveryConfig] = None) -> List[str]:
        """`site:` queries for each priority source category in the intent."""
        config = config or self.config
        queries = []
        for category in sorted(intent.priority_sources, key=lambda c: c.value):
            domains = PRIORITY_SOURCE_DOMAINS.get(category, ())
            for domain in domains[:config.site_queries_per_category]:
                if host_matches(f"https://{domain}/", config.exclusion_domains):
                    continue
                queries.append(f"site:{domain} {seed} funding")
        return queries

    async def _run_query(self, query: str, config: DiscoveryConfig) -> List[SearchResult]:
        return await asyncio.to_thread(self.providers.search, query, config.results_per_query)

    async def search(
        self,
        queries: Sequence[str],
        intent: SearchIntent,
        seed: Optional[str] = None,
        config: Optional[DiscoveryConfig] = None,
    ) -> "tuple[List[SearchResult], SearchStrategy]":
        """
        Run the queries and return filtered, de-duplicated results.

        Args:
            queries: Expanded queries, most important first
            intent: Search intent (depth and priority sources)
            seed: Original query, used for site-scoped queries
            config: Per-run override of the orchestrator's config

        Returns:
            (results, strategy)
        """
        config = config or self.config
        cap = config.query_cap(intent.recommended_depth)
        selected = list(queries)[:cap]
        site_queries = self.site_queries(intent, seed or (selected[0] if selected else ""), config)

        strategy = SearchStrategy(
            depth=intent.recommended_depth.value,
            queries=selected,
            site_queries=site_queries,
        )

        collected: List[SearchResult] = []
        all_queries = selected + site_queries

        for i, query in enumerate(all_queries):
            try:
                results = await self._run_query(query, config)
            except ProviderError as e:
                logger.warning(f"Search failed for {query!r}: {e}")
                strategy.failed_queries.append(query)
                results = []
            except Exception as e:
                logger.error(f"Unexpected search error for {query!r}: {e}")
                strategy.failed_queries.append(query)
                results = []

            collected.extend(results)

            if config.search_delay and i < len(all_queries) - 1:
                await asyncio.sleep(config.search_delay)

        strategy.raw_results = len(collected)

        kept = exclude_domains(collected, config.exclusion_domains)
        strategy.excluded_results = len(collected) - len(kept)

        unique = dedupe_results(kept)
        strategy.duplicate_results = len(kept) - len(unique)

        logger.info(
            f"Search: {len(all_queries)} queries, {strategy.raw_results} raw results, "
            f"{strategy.excluded_results} excluded, {len(unique)} unique"
        )
        return unique, strategy
