"""
Discovery, scoring and cache entrypoints.

    DiscoveryPipeline.discover        query -> stored, scored opportunities
    DiscoveryPipeline.score           one (opportunity, project, profile) triple
    DiscoveryPipeline.get_or_calculate_score
                                      cached score for (user, project, opportunity)

Stage components are built per run from the run's DiscoveryConfig, so a
caller's exclusion overrides never leak into another run.

Usage:
    from dotenv import load_dotenv
    from funding_discovery.pipeline import DiscoveryPipeline, DiscoveryRequest

    load_dotenv()
    pipeline = DiscoveryPipeline.from_settings(Settings.from_env())
    result = pipeline.discover_sync(DiscoveryRequest(user_id="u1", search_query="clean energy nonprofit"))
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from funding_discovery.analyze.opportunity_analyzer import OpportunityAnalyzer
from funding_discovery.config import DiscoveryConfig, Settings
from funding_discovery.core.domain_models import (
    OpportunityCandidate,
    ProjectSummary,
    ScoredOpportunity,
    SearchDepth,
    TimelineUrgency,
)
from funding_discovery.core.errors import ConfigurationError
from funding_discovery.core.time_utils import Clock, days_until, now_utc, timeline_urgency
from funding_discovery.core.utils import host_matches
from funding_discovery.enhance.content_extractor import ContentExtractor
from funding_discovery.enhance.relevance_scorer import RelevanceFilter
from funding_discovery.ingest.resource_fetcher import ResourceFetcher
from funding_discovery.llm.client import LLMChain
from funding_discovery.scoring.fit_scorer import (
    FitScorer,
    application_priority,
    competitiveness_level,
    discovery_fit_score,
    matching_projects,
    recommendation_strength,
)
from funding_discovery.search.intent_analyzer import IntentAnalyzer
from funding_discovery.search.orchestrator import SearchOrchestrator
from funding_discovery.search.providers import ProviderChain
from funding_discovery.search.query_expander import expand_queries
from funding_discovery.storage.db import Database
from funding_discovery.storage.fetch_cache import FetchCache
from funding_discovery.storage.opportunity_store import AI_DISCOVERY_SOURCE, OpportunityStore
from funding_discovery.storage.profile_repository import ProfileRepository
from funding_discovery.storage.scoring_cache import ScoringCache


logger = logging.getLogger(__name__)

DEFAULT_QUERY = "grant funding opportunities"

SCORING_ACTIONS = ("enhanced-score", "pre-score")


@dataclass
class DiscoveryRequest:
    """Input of one discovery run."""
    user_id: str
    search_query: Optional[str] = None
    project_type: Optional[str] = None
    organization_type: Optional[str] = None
    user_projects: List[Dict[str, Any]] = field(default_factory=list)
    search_depth: Optional[str] = None
    conversation_history: List[Dict[str, Any]] = field(default_factory=list)
    resource_only: bool = False
    db_first: bool = False
    freshness_days: Optional[int] = None
    extra_exclusions: Sequence[str] = ()
    replace_exclusions: Optional[Sequence[str]] = None


def derive_query(profile: Optional[Dict[str, Any]], project_type: Optional[str],
                 projects: Sequence[Dict[str, Any]]) -> str:
    """
    Build a search query from context when the caller gave none.

    Uses the profile's industry, the requested project type and the first
    project's name and type.
    """
    parts = []
    if profile and profile.get("industry"):
        parts.append(str(profile["industry"]))
    if project_type:
        parts.append(project_type)

    if projects:
        primary = projects[0]
        name = primary.get("name") or primary.get("title")
        if name:
            parts.append(str(name))
        if primary.get("project_type"):
            parts.append(str(primary["project_type"]))

    if not parts:
        return DEFAULT_QUERY
    return f"{' '.join(parts)} funding opportunities"


def _stored_summary(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "title": row["title"],
        "sponsor": row["sponsor"],
        "deadline": row["deadline_date"],
        "sourceUrl": row["url"],
        "fitScore": row["fit_score"],
        "isNonMonetaryResource": row["is_non_monetary_resource"],
        "applicationPriority": row["application_priority"],
        "timelineUrgency": row["timeline_urgency"],
    }


class DiscoveryPipeline:
    """Wires the discovery stages, the fit scorer and the scoring cache together."""

    def __init__(
        self,
        llm: LLMChain,
        providers: ProviderChain,
        fetcher: ResourceFetcher,
        db: Database,
        config: Optional[DiscoveryConfig] = None,
        clock: Clock = now_utc,
    ):
        self.llm = llm
        self.providers = providers
        self.fetcher = fetcher
        self.config = config or DiscoveryConfig()
        self.clock = clock

        self.db = db
        self.store = OpportunityStore(db, clock=clock)
        self.repository = ProfileRepository(db)
        self.scorer = FitScorer(llm=llm, weights=self.config.weights, clock=clock)
        self.cache = ScoringCache(
            db,
            self.scorer,
            self.repository,
            self.store,
            ttl_days=self.config.cache_ttl_days,
            batch_size=self.config.scoring_batch_size,
            batch_delay=self.config.scoring_delay,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: Settings,
                      config: Optional[DiscoveryConfig] = None) -> "DiscoveryPipeline":
        config = config or DiscoveryConfig()
        fetch_cache = FetchCache(settings.fetch_cache_path) if settings.fetch_cache_path else None
        return cls(
            llm=LLMChain.from_settings(settings),
            providers=ProviderChain.default(settings.brave_search_api_key),
            fetcher=ResourceFetcher(cache=fetch_cache, timeout=config.fetch_timeout),
            db=Database(settings.db_path),
            config=config,
        )

    # Discovery

    def run_config(self, request: DiscoveryRequest) -> DiscoveryConfig:
        """Per-run copy of the configuration with the request's exclusion overrides."""
        config = self.config
        if request.replace_exclusions is not None:
            config = config.replace_exclusions(request.replace_exclusions)
        if request.extra_exclusions:
            config = config.with_exclusions(request.extra_exclusions)
        return config

    def score_candidate(self, candidate: OpportunityCandidate,
                        projects: Sequence[ProjectSummary],
                        organization_type: Optional[str]) -> ScoredOpportunity:
        """Discovery-time fit score of a candidate against all of the user's projects."""
        opportunity = candidate.to_scoring_dict()
        urgency = timeline_urgency(days_until(candidate.deadline, self.clock()))

        fit = discovery_fit_score(candidate.match_score, opportunity, projects, organization_type)
        if urgency == TimelineUrgency.EXPIRED:
            fit = 0.0

        competitiveness = competitiveness_level(opportunity)
        matches = matching_projects(projects, opportunity)

        return ScoredOpportunity(
            candidate=candidate,
            fit_score=round(fit, 1),
            competitiveness=competitiveness,
            timeline_urgency=urgency,
            application_priority=application_priority(fit, competitiveness, urgency),
            matching_project_ids=[p.id for p in matches if p.id],
            recommendation_strength=recommendation_strength(fit),
            score_breakdown={
                "method": "discovery",
                "matchScore": candidate.match_score,
                "analysisConfidence": candidate.confidence,
                "matchFactors": list(candidate.match_factors),
                "resourceTypes": list(candidate.resource_types),
            },
        )

    async def discover(self, request: DiscoveryRequest) -> Dict[str, Any]:
        """
        Run discovery end to end.

        Returns:
            {success, opportunitiesFound, opportunities, searchQuery,
             intentAnalysis, searchStrategy, usedCache}

        Raises:
            PersistenceError: if storing results fails on upsert and insert
        """
        if not self.llm.available:
            error = ConfigurationError(
                "No LLM provider configured. Set OPENAI_API_KEY (or ANTHROPIC_API_KEY)."
            )
            logger.error(f"Discovery aborted: {error}")
            return {"success": False, "error": str(error)}

        config = self.run_config(request)
        profile = await asyncio.to_thread(self.repository.get_profile, request.user_id)
        project_rows = list(request.user_projects)
        if not project_rows:
            project_rows = await asyncio.to_thread(self.repository.list_projects, request.user_id)

        organization_type = request.organization_type or (profile or {}).get("organization_type")
        query = (request.search_query or "").strip() or derive_query(profile, request.project_type, project_rows)

        if request.db_first:
            rows = await asyncio.to_thread(
                self.store.list_recent,
                request.freshness_days or config.freshness_days,
                AI_DISCOVERY_SOURCE,
                organization_type,
                request.project_type,
            )
            if rows:
                logger.info(f"DB-first discovery: returning {len(rows)} stored opportunities")
                return {
                    "success": True,
                    "opportunitiesFound": len(rows),
                    "opportunities": [_stored_summary(r) for r in rows],
                    "searchQuery": query,
                    "intentAnalysis": None,
                    "searchStrategy": None,
                    "usedCache": True,
                }

        projects = [ProjectSummary.from_row(p) for p in project_rows]

        intent = await IntentAnalyzer(self.llm).analyze(
            query, request.conversation_history, projects, organization_type
        )
        if request.search_depth:
            try:
                intent = replace(intent, recommended_depth=SearchDepth(request.search_depth))
            except ValueError:
                logger.warning(f"Unknown search depth {request.search_depth!r}, keeping {intent.recommended_depth.value}")

        queries = expand_queries(
            query,
            projects,
            organization_type=organization_type,
            resource_only=request.resource_only,
            year=self.clock().year,
            limit=config.max_expanded_queries,
        )
        logger.info(f"Discovery for {request.user_id}: {query!r} expanded to {len(queries)} queries")

        results, strategy = await SearchOrchestrator(self.providers, config).search(
            queries, intent, seed=query
        )

        relevant = RelevanceFilter(config.relevance_threshold, config.max_extractions).filter(
            results, intent, request.resource_only, config.exclusion_domains
        )

        contents = await ContentExtractor(self.fetcher, config).extract_many(
            [s.result for s in relevant]
        )

        candidates = await OpportunityAnalyzer(self.llm, config).analyze_many(contents, query, projects)

        scored = [
            self.score_candidate(c, projects, organization_type)
            for c in candidates
            if c.is_valid and not host_matches(c.url, config.exclusion_domains)
        ]
        scored.sort(key=lambda s: s.fit_score, reverse=True)

        opportunities = []
        for item in scored:
            if item.fit_score < config.min_store_score:
                continue
            opportunity_id = await asyncio.to_thread(
                self.store.upsert, item, AI_DISCOVERY_SOURCE, organization_type, request.project_type
            )
            opportunities.append(item.summary(opportunity_id))

        logger.info(
            f"Discovery complete: {len(results)} results, {len(relevant)} relevant, "
            f"{len(contents)} extracted, {len(candidates)} qualified, {len(opportunities)} stored"
        )

        return {
            "success": True,
            "opportunitiesFound": len(opportunities),
            "opportunities": opportunities,
            "searchQuery": query,
            "intentAnalysis": intent.to_dict(),
            "searchStrategy": strategy.to_dict(),
            "usedCache": False,
        }

    def discover_sync(self, request: DiscoveryRequest) -> Dict[str, Any]:
        return asyncio.run(self.discover(request))

    # Scoring

    def score(self, opportunity: Dict[str, Any], project: Dict[str, Any],
              user_profile: Dict[str, Any], action: str = "enhanced-score") -> Dict[str, Any]:
        """
        Score one triple.

        "enhanced-score" returns the full fit result; "pre-score" only the
        rule-based eligibility check.

        Raises:
            ValueError: for any other action
        """
        if action == "pre-score":
            return self.scorer.pre_score(opportunity, project, user_profile).to_dict()
        if action == "enhanced-score":
            return self.scorer.score(opportunity, project, user_profile).to_dict()
        raise ValueError(f"Unknown scoring action {action!r}; expected one of {', '.join(SCORING_ACTIONS)}")

    def get_or_calculate_score(self, user_id: str, project_id: str, opportunity_id: str,
                               force_recalculate: bool = False) -> Dict[str, Any]:
        """Cached or freshly calculated score: {score, cached, analysis, lastCalculated}."""
        result = self.cache.get_or_calculate(user_id, project_id, opportunity_id, force_recalculate)
        last = result["last_calculated"]
        return {
            "score": result["score"],
            "cached": result["cached"],
            "analysis": result["analysis"],
            "lastCalculated": last.isoformat() if last else None,
        }

    # Updates with smart invalidation

    def update_project(self, user_id: str, project: Dict[str, Any]) -> bool:
        """
        Save a project and invalidate its cached scores if it changed significantly.

        Returns:
            True if cached scores were invalidated
        """
        old = self.repository.get_project(project["id"]) or {}
        self.repository.save_project(user_id, project)
        return self.cache.invalidate_on_project_update(user_id, str(project["id"]), old, project)

    def update_profile(self, user_id: str, profile: Dict[str, Any]) -> bool:
        """Save a profile; a significant change invalidates the user's cached scores."""
        old = self.repository.get_profile(user_id) or {}
        self.repository.save_profile(user_id, profile)
        return self.cache.invalidate_on_profile_update(user_id, old, profile)
