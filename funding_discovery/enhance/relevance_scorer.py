"""
Score search results for funding relevance before anything is fetched.

Only the title and snippet are looked at, so this is cheap; it decides which
pages are worth the cost of a fetch and an LLM call.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from funding_discovery.core.domain_models import SearchIntent, SearchResult
from funding_discovery.core.resources import classify_resource, resource_signals
from funding_discovery.core.utils import host_matches


logger = logging.getLogger(__name__)


@dataclass
class ScoredResult:
    """Search result with its relevance score and the terms that produced it."""
    result: SearchResult
    score: float
    keyword_matches: List[str] = field(default_factory=list)
    funding_matches: List[str] = field(default_factory=list)
    indicator_matches: List[str] = field(default_factory=list)
    negative_matches: List[str] = field(default_factory=list)

    @property
    def url(self) -> str:
        return self.result.url


class RelevanceFilter:
    """Two-stage relevance filter for raw search hits."""

    FUNDING_TERMS = [
        'grant', 'funding', 'fund', 'award',
        'fellowship', 'scholarship', 'sponsorship', 'financial support',
        'credit', 'in-kind', 'donation', 'prize', 'seed funding',
    ]

    FUNDING_ORGANIZATION_TOKENS = [
        'foundation', 'trust', 'endowment', 'philanthrop', 'council',
        'department of', 'agency', 'ministry', 'corporate giving',
        'community fund', 'for nonprofits', 'for startups',
    ]

    INDICATOR_TERMS = [
        'apply', 'application', 'deadline', 'eligibility', 'eligible',
        'request for proposals', 'rfp', 'call for proposals', 'submit',
        'applications open', 'now accepting', 'program guidelines', 'how to apply',
    ]

    NEGATIVE_TERMS = [
        'news', 'blog', 'press release', 'job', 'career',
        'vacancy', 'hiring', 'loan calculator', 'scam', 'forum', 'reddit',
        'wikipedia', 'obituary', 'for sale',
    ]

    # Aggregator pages list many programs but describe none of them
    DIRECTORY_PATTERNS = [
        r'\btop\s+\d+\b',
        r'\b\d+\s+(?:best|great|free)\b',
        r'\blist of\b',
        r'\bdirectory\b',
        r'\bdatabase of\b',
        r'\bgrant databases?\b',
        r'\bsearch (?:for )?grants\b',
        r'\bbrowse (?:all )?(?:grants|opportunities)\b',
        r'\ball grants\b',
    ]

    def __init__(self, threshold: float = 0.4, max_results: int = 25):
        self.threshold = threshold
        self.max_results = max_results
        self._directory_re = re.compile('|'.join(self.DIRECTORY_PATTERNS), re.IGNORECASE)

    @staticmethod
    def _matches(text_lower: str, terms: Iterable[str], prefix: bool = False) -> List[str]:
        # Whole words with an optional plural "s"; prefix mode for stems
        suffix = "" if prefix else r"s?\b"
        return [t for t in terms if re.search(rf"\b{re.escape(t)}{suffix}", text_lower)]

    def is_directory_page(self, result: SearchResult) -> bool:
        return bool(self._directory_re.search(result.title or ''))

    def passes_prefilter(self, result: SearchResult) -> bool:
        """Stage 1: some funding vocabulary, and not a directory page."""
        text_lower = f"{result.title} {result.snippet}".lower()
        if self.is_directory_page(result):
            return False
        return bool(
            self._matches(text_lower, self.FUNDING_TERMS)
            or self._matches(text_lower, self.FUNDING_ORGANIZATION_TOKENS, prefix=True)
        )

    def score(self, result: SearchResult, intent: Optional[SearchIntent] = None) -> ScoredResult:
        """
        Stage 2 weighted score, clamped to [0, 1].

        0.2 per intent keyword, 0.15 per funding term, 0.1 per indicator
        term, minus 0.3 per negative term.
        """
        text_lower = f"{result.title} {result.snippet}".lower()

        keywords = sorted(intent.keywords) if intent else []
        keyword_matches = [k for k in keywords if k and k.lower() in text_lower]
        funding = self._matches(text_lower, self.FUNDING_TERMS)
        indicators = self._matches(text_lower, self.INDICATOR_TERMS)
        negatives = self._matches(text_lower, self.NEGATIVE_TERMS)

        raw = (
            0.2 * len(keyword_matches)
            + 0.15 * len(funding)
            + 0.1 * len(indicators)
            - 0.3 * len(negatives)
        )

        return ScoredResult(
            result=result,
            score=round(max(0.0, min(1.0, raw)), 4),
            keyword_matches=keyword_matches,
            funding_matches=funding,
            indicator_matches=indicators,
            negative_matches=negatives,
        )

    def passes_resource_mode(self, result: SearchResult) -> bool:
        """Resource-only mode: needs a resource signal that outweighs grant vocabulary."""
        text = f"{result.title} {result.snippet}"
        if not resource_signals(text) and 'credits' not in text.lower():
            return False
        return classify_resource(text).is_resource

    def filter(
        self,
        results: Sequence[SearchResult],
        intent: Optional[SearchIntent] = None,
        resource_only: bool = False,
        exclusion_domains: Iterable[str] = (),
    ) -> List[ScoredResult]:
        """
        Keep results scoring at least the threshold, best first.

        Returns:
            At most `max_results` ScoredResults sorted by descending score
        """
        exclusion_domains = list(exclusion_domains)
        kept = []
        dropped = {'excluded': 0, 'prefilter': 0, 'resource': 0, 'score': 0}

        for result in results:
            if exclusion_domains and host_matches(result.url, exclusion_domains):
                dropped['excluded'] += 1
                continue
            if not self.passes_prefilter(result):
                dropped['prefilter'] += 1
                continue
            if resource_only and not self.passes_resource_mode(result):
                dropped['resource'] += 1
                continue

            scored = self.score(result, intent)
            if scored.score < self.threshold:
                dropped['score'] += 1
                continue
            kept.append(scored)

        # Stable sort keeps provider order among equal scores
        kept.sort(key=lambda s: s.score, reverse=True)
        kept = kept[:self.max_results]

        logger.info(
            f"Relevance filter: {len(results)} in, {len(kept)} kept "
            f"(dropped {dropped})"
        )
        return kept
