"""
Configuration for the discovery pipeline.

Two layers:

- `Settings`: credentials and paths, read from the environment (a `.env`
  file is loaded by the entrypoints via python-dotenv).
- `DiscoveryConfig`: tunables for one discovery run (batch sizes, delays,
  thresholds, exclusion domains). Immutable; per-run overrides are made with
  `dataclasses.replace` or the helpers below, never by mutating shared state.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterable, Optional

from funding_discovery.core.domain_models import SearchDepth, SourceCategory
from funding_discovery.core.errors import ConfigurationError


# Sources already ingested through dedicated sync jobs
DEFAULT_EXCLUSION_DOMAINS: FrozenSet[str] = frozenset({
    "grants.gov",
    "sam.gov",
    "nih.gov",
    "nsf.gov",
    "candid.org",
    "guidestar.org",
    "foundationcenter.org",
})

# Static site lists used for priority-source site: queries
PRIORITY_SOURCE_DOMAINS: Dict[SourceCategory, tuple] = {
    SourceCategory.GOVERNMENT: ("energy.gov", "usda.gov", "sba.gov", "epa.gov", "arts.gov", "neh.gov"),
    SourceCategory.FOUNDATION: ("rwjf.org", "macfound.org", "gatesfoundation.org", "kresge.org", "fordfoundation.org"),
    SourceCategory.CORPORATE: ("google.org", "aws.amazon.com", "microsoft.com", "salesforce.org", "techsoup.org"),
    SourceCategory.INTERNATIONAL: ("worldbank.org", "undp.org", "ec.europa.eu", "globalgiving.org"),
    SourceCategory.ACADEMIC: ("ed.gov", "aaas.org", "sloan.org", "researchcorporation.org"),
}

DEPTH_QUERY_CAPS: Dict[SearchDepth, int] = {
    SearchDepth.QUICK: 5,
    SearchDepth.STANDARD: 10,
    SearchDepth.COMPREHENSIVE: 15,
}


@dataclass(frozen=True)
class Settings:
    """Credentials and paths."""
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-3-haiku-20240307"
    brave_search_api_key: Optional[str] = None
    db_path: str = "funding.db"
    fetch_cache_path: Optional[str] = "fetch_cache.db"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from environment variables."""
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", cls.openai_model),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            anthropic_model=os.getenv("ANTHROPIC_MODEL", cls.anthropic_model),
            brave_search_api_key=os.getenv("BRAVE_SEARCH_API_KEY") or None,
            db_path=os.getenv("FUNDING_DB_PATH", cls.db_path),
            fetch_cache_path=os.getenv("FETCH_CACHE_PATH", cls.fetch_cache_path) or None,
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
        )

    def require_llm(self) -> None:
        """
        Raise if no LLM provider is configured.

        Discovery cannot structure anything without at least one model, so
        this is the one condition that fails a whole run.
        """
        placeholder = {"", "sk-placeholder"}
        if (self.openai_api_key or "") in placeholder and not self.anthropic_api_key:
            raise ConfigurationError(
                "No LLM provider configured. Set OPENAI_API_KEY (or ANTHROPIC_API_KEY) "
                "in your environment."
            )


@dataclass(frozen=True)
class ScoringWeights:
    """
    Point budgets and blend weights for fit scoring.

    These were tuned by hand; change them deliberately.
    """
    compliance_max: int = 30
    readiness_max: int = 25
    strategic_max: int = 25
    timing_max: int = 20
    rule_weight: float = 0.6
    ai_weight: float = 0.4
    min_amount_ratio: float = 0.1
    max_amount_ratio: float = 10.0
    high_confidence_threshold: int = 80
    medium_confidence_threshold: int = 60


@dataclass(frozen=True)
class DiscoveryConfig:
    """Tunables for a discovery run."""
    exclusion_domains: FrozenSet[str] = DEFAULT_EXCLUSION_DOMAINS

    # Query expansion / search
    max_expanded_queries: int = 35
    search_delay: float = 0.2
    results_per_query: int = 10
    site_queries_per_category: int = 3

    # Relevance filter
    relevance_threshold: float = 0.4
    max_extractions: int = 25

    # Content extraction
    extraction_batch_size: int = 5
    extraction_delay: float = 1.0
    fetch_timeout: float = 15.0
    max_content_chars: int = 2000
    min_content_chars: int = 300

    # Opportunity analysis
    analysis_batch_size: int = 3
    analysis_delay: float = 1.5
    qualification_threshold: float = 40.0

    # Storage
    min_store_score: float = 30.0
    freshness_days: int = 30

    # Scoring cache
    cache_ttl_days: int = 7
    scoring_batch_size: int = 5
    scoring_delay: float = 0.2

    weights: ScoringWeights = field(default_factory=ScoringWeights)

    def query_cap(self, depth: SearchDepth) -> int:
        return DEPTH_QUERY_CAPS.get(depth, DEPTH_QUERY_CAPS[SearchDepth.STANDARD])

    def with_exclusions(self, extra: Iterable[str]) -> "DiscoveryConfig":
        """Copy of this config with additional excluded hosts."""
        cleaned = {d.strip().lower() for d in extra if d and d.strip()}
        return replace(self, exclusion_domains=frozenset(self.exclusion_domains | cleaned))

    def replace_exclusions(self, domains: Iterable[str]) -> "DiscoveryConfig":
        """Copy of this config with the exclusion set replaced."""
        cleaned = {d.strip().lower() for d in domains if d and d.strip()}
        return replace(self, exclusion_domains=frozenset(cleaned))

    def without_delays(self) -> "DiscoveryConfig":
        """Copy with all inter-call delays set to zero (tests, local runs)."""
        return replace(
            self,
            search_delay=0.0,
            extraction_delay=0.0,
            analysis_delay=0.0,
            scoring_delay=0.0,
        )
