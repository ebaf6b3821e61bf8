"""
Extract funding-focused text from opportunity webpages.

Order of preference:
1. Funding sections: blocks mentioning amounts, deadlines or eligibility
2. Main content container (main, article, content divs)
3. Whole page with tags stripped

Every strategy is capped at `max_content_chars`; pages that end up shorter
than `min_content_chars` are dropped.
"""

import logging
import re
from typing import List, Optional, Sequence

from bs4 import BeautifulSoup, Comment

from funding_discovery.config import DiscoveryConfig
from funding_discovery.core.batching import run_in_batches
from funding_discovery.core.domain_models import ExtractedContent, SearchResult
from funding_discovery.core.utils import clean_text, truncate
from funding_discovery.enhance.eligibility_extractor import extract_eligibility
from funding_discovery.ingest.resource_fetcher import ResourceFetcher


logger = logging.getLogger(__name__)


FUNDING_SECTION_PATTERNS = {
    'amount': [
        r'\$\s*[\d,]+(?:\.\d+)?\s*(?:k|m|million|thousand|billion)?',
        r'\b(?:award|grant|funding) (?:amount|size|range|ceiling|floor)s?\b',
        r'\bup to \$',
        r'\b(?:in|worth of) (?:cloud |ad |api )?credits\b',
    ],
    'deadline': [
        r'\bdeadline\b',
        r'\bdue (?:date|by)\b',
        r'\b(?:applications?|proposals?) (?:close|closes|are due|must be (?:received|submitted))\b',
        r'\b(?:closing|submission) date\b',
        r'\brolling (?:basis|deadline|applications?)\b',
    ],
    'eligibility': [
        r'\beligib(?:le|ility)\b',
        r'\bwho (?:can|may|should) apply\b',
        r'\bopen to\b',
        r'\b501\s*\(?c\)?\s*\(?3\)?',
        r'\bapplicants? must\b',
    ],
}


class ContentExtractor:
    """Fetch and extract funding-focused text for search results."""

    # Elements to remove (navigation, ads, etc.)
    REMOVE_SELECTORS = [
        'script',
        'style',
        'noscript',
        'nav',
        'header',
        'footer',
        'aside',
        'form',
        '.sidebar',
        '.navigation',
        '.menu',
        '.breadcrumb',
        '.social-share',
        '.advertisement',
        '#cookie-banner',
        '.newsletter-signup',
    ]

    # Elements that typically contain main content
    CONTENT_SELECTORS = [
        'main',
        'article',
        '[role="main"]',
        '#main-content',
        '#content',
        '.main-content',
        '.content',
        '.entry-content',
        '.page-content',
    ]

    BLOCK_TAGS = ['h1', 'h2', 'h3', 'h4', 'p', 'li', 'td', 'dd']

    BOILERPLATE = [
        r'Cookie settings',
        r'Accept (?:all )?cookies',
        r'Skip to (?:main )?content',
        r'JavaScript is disabled',
        r'Back to top',
    ]

    def __init__(self, fetcher: Optional[ResourceFetcher] = None,
                 config: Optional[DiscoveryConfig] = None):
        self.config = config or DiscoveryConfig()
        self.fetcher = fetcher or ResourceFetcher(timeout=self.config.fetch_timeout)
        self._section_patterns = {
            name: re.compile('|'.join(patterns), re.IGNORECASE)
            for name, patterns in FUNDING_SECTION_PATTERNS.items()
        }

    def _soup(self, html: str) -> BeautifulSoup:
        soup = BeautifulSoup(html, 'html.parser')

        for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()

        for selector in self.REMOVE_SELECTORS:
            for element in soup.select(selector):
                element.decompose()

        return soup

    def _blocks(self, element) -> List[str]:
        blocks = []
        for elem in element.find_all(self.BLOCK_TAGS):
            text = elem.get_text(' ', strip=True)
            if text:
                blocks.append(text)
        return blocks

    def _clean(self, text: str) -> str:
        for pattern in self.BOILERPLATE:
            text = re.sub(pattern, '', text, flags=re.IGNORECASE)
        return clean_text(text)

    def funding_sections(self, soup: BeautifulSoup) -> str:
        """Blocks matching any funding pattern, with the heading that precedes them."""
        selected = []
        last_heading = None

        for elem in soup.find_all(self.BLOCK_TAGS):
            text = elem.get_text(' ', strip=True)
            if not text:
                continue
            if elem.name.startswith('h'):
                last_heading = text
                continue
            if any(p.search(text) for p in self._section_patterns.values()):
                if last_heading:
                    selected.append(last_heading)
                    last_heading = None
                selected.append(text)

        return self._clean("\n".join(dict.fromkeys(selected)))

    def main_content(self, soup: BeautifulSoup) -> str:
        for selector in self.CONTENT_SELECTORS:
            elements = soup.select(selector)
            if elements:
                return self._clean("\n".join(self._blocks(elements[0])))
        return ""

    def full_page(self, soup: BeautifulSoup) -> str:
        root = soup.body or soup
        return self._clean(root.get_text('\n', strip=True))

    def extract_text(self, html: str) -> str:
        """
        Best funding-focused excerpt of a page.

        A strategy is used only if its output reaches the minimum length;
        otherwise the next one is tried.
        """
        cap = self.config.max_content_chars
        minimum = self.config.min_content_chars
        soup = self._soup(html)

        text = ""
        for strategy in (self.funding_sections, self.main_content, self.full_page):
            text = truncate(strategy(soup), cap)
            if len(text) >= minimum:
                return text
        return text

    async def extract(self, result: SearchResult) -> Optional[ExtractedContent]:
        """
        Fetch and extract one result.

        Returns None for pages under the minimum length. Fetch failures
        propagate so the batch runner records them.
        """
        html = await self.fetcher.afetch_html(result.url)
        text = self.extract_text(html)

        if len(text) < self.config.min_content_chars:
            logger.debug(f"Insufficient content ({len(text)} chars): {result.url}")
            return None

        # Eligibility runs over the whole page, not just the excerpt
        page_text = self.full_page(self._soup(html))
        return ExtractedContent(
            result=result,
            text=text,
            eligibility_criteria=extract_eligibility(page_text),
        )

    async def extract_many(self, results: Sequence[SearchResult]) -> List[ExtractedContent]:
        """Extract results in bounded batches; failures are logged and skipped."""
        outcomes = await run_in_batches(
            list(results),
            self.extract,
            batch_size=self.config.extraction_batch_size,
            delay=self.config.extraction_delay,
            item_timeout=self.config.fetch_timeout + 5,
            label="extraction",
        )

        extracted = []
        for outcome in outcomes:
            if not outcome.ok:
                logger.warning(f"Extraction failed for {outcome.item.url}: {outcome.error}")
            elif outcome.value is not None:
                extracted.append(outcome.value)

        logger.info(f"Content extraction: {len(results)} pages, {len(extracted)} usable")
        return extracted
