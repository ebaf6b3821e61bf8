"""
Turn extracted page text into structured opportunity records with an LLM.

One LLM call per page, in small batches. A page is dropped (never retried)
when the response does not parse, misses required fields, says the page is
not a real opportunity, or scores below the qualification threshold.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from funding_discovery.config import DiscoveryConfig
from funding_discovery.core.batching import run_in_batches
from funding_discovery.core.domain_models import ExtractedContent, OpportunityCandidate, ProjectSummary
from funding_discovery.core.errors import ProviderError
from funding_discovery.core.money import coerce_amount, parse_usd_range
from funding_discovery.core.parsing import ParseFailure, ParseResult, parse_llm_json, require_fields
from funding_discovery.core.resources import classify_resource
from funding_discovery.core.utils import parse_date_maybe


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert funding analyst. Analyze web content for legitimate funding "
    "opportunities (grants, credits, in-kind resources) and extract structured information."
)

REQUIRED_FIELDS = ("isRelevantOpportunity", "opportunityTitle", "relevanceScore")

RESPONSE_SCHEMA = """{
  "isValidOpportunity": boolean (false for lists, directories, news, or expired programs),
  "isRelevantOpportunity": boolean,
  "opportunityTitle": string,
  "fundingAgency": string,
  "fundingAmountMin": number or null,
  "fundingAmountMax": number or null,
  "deadline": string (YYYY-MM-DD) or null,
  "eligibilityRequirements": [array of strings],
  "organizationTypes": [array of strings, e.g. "nonprofit", "small_business"],
  "focusAreas": [array of strings],
  "projectTypes": [array of strings],
  "applicationRequirements": string,
  "isNonMonetaryResource": boolean,
  "resourceTypes": [array of strings, e.g. "cloud_credits", "mentorship", "in_kind"],
  "relevanceScore": number (0-100),
  "confidence": number (0-100),
  "matchFactors": [array of strings],
  "keyInformation": string,
  "recommendedNextSteps": string
}"""


def _as_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        parts = [p.strip() for p in value.replace(";", "\n").split("\n")]
        return [p for p in parts if p]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return [str(value)]


def _as_score(value, default: float = 0.0) -> float:
    try:
        return max(0.0, min(100.0, float(value)))
    except (TypeError, ValueError):
        return default


def _as_bool(value, default: Optional[bool] = None) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return default


def _format_projects(projects: Sequence[ProjectSummary]) -> str:
    lines = []
    for p in projects[:5]:
        line = f"- {p.name or 'Unnamed project'}"
        if p.project_type or p.category:
            line += f" ({p.project_type or p.category})"
        if p.funding_needed:
            line += f", needs ${p.funding_needed:,.0f}"
        if p.description:
            line += f": {p.description[:150]}"
        lines.append(line)
    return "\n".join(lines) or "(no projects provided)"


class OpportunityAnalyzer:
    """LLM structuring of extracted pages into OpportunityCandidates."""

    def __init__(self, llm, config: Optional[DiscoveryConfig] = None):
        """
        Args:
            llm: LLMChain (primary and secondary provider)
            config: Batch size, delay and qualification threshold
        """
        self.llm = llm
        self.config = config or DiscoveryConfig()

    def build_prompt(self, content: ExtractedContent, query: str,
                     projects: Sequence[ProjectSummary]) -> str:
        eligibility = "\n".join(f"- {c}" for c in content.eligibility_criteria) or "(none extracted)"
        return f"""Analyze the following web content to determine if it contains a legitimate funding opportunity.

CONTENT TO ANALYZE:
Title: {content.title}
URL: {content.url}
Text: {content.text[:self.config.max_content_chars]}

EXTRACTED ELIGIBILITY CRITERIA:
{eligibility}

USER CONTEXT:
Search Query: {query}
User Projects:
{_format_projects(projects)}

ANALYSIS TASKS:
1. Is this a legitimate, currently open funding opportunity (not a list or directory)?
2. Extract the program details.
3. Is the support non-monetary (credits, donated services, equipment, mentorship)?
4. Rate relevance to the user's search and projects (0-100).

Respond in JSON format:
{RESPONSE_SCHEMA}"""

    def parse_response(self, text: str) -> ParseResult:
        return require_fields(parse_llm_json(text), REQUIRED_FIELDS)

    def build_candidate(self, content: ExtractedContent, payload: Dict[str, Any]) -> OpportunityCandidate:
        """Map a validated LLM payload onto an OpportunityCandidate."""
        amount_min = coerce_amount(payload.get("fundingAmountMin"))
        amount_max = coerce_amount(payload.get("fundingAmountMax"))
        if amount_min is None and amount_max is None:
            text_min, text_max = parse_usd_range(content.text)
            amount_min = float(text_min) if text_min else None
            amount_max = float(text_max) if text_max else None
        if amount_min is not None and amount_max is not None and amount_min > amount_max:
            amount_min, amount_max = amount_max, amount_min

        eligibility = _as_list(payload.get("eligibilityRequirements"))
        for criterion in content.eligibility_criteria:
            if criterion not in eligibility:
                eligibility.append(criterion)

        classification = classify_resource(
            f"{content.title} {content.text}",
            llm_flag=_as_bool(payload.get("isNonMonetaryResource")),
            llm_types=_as_list(payload.get("resourceTypes")),
        )

        return OpportunityCandidate(
            content=content,
            is_valid=_as_bool(payload.get("isValidOpportunity"), True),
            program_name=str(payload.get("opportunityTitle") or content.title).strip(),
            sponsor=str(payload.get("fundingAgency") or "Unknown").strip(),
            amount_min=amount_min,
            amount_max=amount_max,
            deadline=parse_date_maybe(payload.get("deadline")),
            eligibility=eligibility,
            project_types=_as_list(payload.get("projectTypes")),
            is_non_monetary_resource=classification.is_resource,
            resource_types=list(getattr(classification, "types", ())),
            match_score=_as_score(payload.get("relevanceScore")),
            confidence=_as_score(payload.get("confidence"), 50.0),
            organization_types=[t.lower().replace(" ", "_") for t in _as_list(payload.get("organizationTypes"))],
            focus_areas=_as_list(payload.get("focusAreas")),
            application_requirements=str(payload.get("applicationRequirements") or ""),
            key_information=str(payload.get("keyInformation") or ""),
            match_factors=_as_list(payload.get("matchFactors")),
            recommended_next_steps=str(payload.get("recommendedNextSteps") or ""),
        )

    async def analyze(self, content: ExtractedContent, query: str,
                      projects: Sequence[ProjectSummary] = ()) -> Optional[OpportunityCandidate]:
        """
        Analyze one page.

        Returns:
            The candidate, or None if it was dropped
        """
        prompt = self.build_prompt(content, query, projects)
        try:
            response = await self.llm.acomplete(SYSTEM_PROMPT, prompt, max_tokens=1000, temperature=0.3)
        except ProviderError as e:
            logger.warning(f"Analysis unavailable for {content.url}: {e}")
            return None

        parsed = self.parse_response(response.content)
        if isinstance(parsed, ParseFailure):
            logger.warning(f"Dropping {content.url}: {parsed.reason}")
            return None

        payload = parsed.value
        if _as_bool(payload.get("isValidOpportunity"), True) is False:
            logger.debug(f"Dropping {content.url}: not a valid opportunity")
            return None
        if not _as_bool(payload.get("isRelevantOpportunity"), False):
            logger.debug(f"Dropping {content.url}: not relevant")
            return None

        candidate = self.build_candidate(content, payload)
        if candidate.match_score < self.config.qualification_threshold:
            logger.debug(f"Dropping {content.url}: score {candidate.match_score:.0f} below threshold")
            return None

        return candidate

    async def analyze_many(self, contents: Sequence[ExtractedContent], query: str,
                           projects: Sequence[ProjectSummary] = ()) -> List[OpportunityCandidate]:
        """Analyze pages in batches; output sorted by match score, best first."""
        projects = list(projects)

        async def worker(content: ExtractedContent) -> Optional[OpportunityCandidate]:
            return await self.analyze(content, query, projects)

        outcomes = await run_in_batches(
            list(contents),
            worker,
            batch_size=self.config.analysis_batch_size,
            delay=self.config.analysis_delay,
            label="analysis",
        )

        candidates = []
        for outcome in outcomes:
            if not outcome.ok:
                logger.warning(f"Analysis failed for {outcome.item.url}: {outcome.error}")
            elif outcome.value is not None:
                candidates.append(outcome.value)

        candidates.sort(key=lambda c: c.match_score, reverse=True)
        logger.info(f"Opportunity analysis: {len(contents)} pages, {len(candidates)} qualified")
        return candidates
