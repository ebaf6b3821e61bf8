"""
Classify what a discovery query is after.

The LLM produces a SearchIntent; when it cannot (no provider, timeout,
malformed JSON) a keyword heuristic builds one instead. `analyze` never
raises.
"""

import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from funding_discovery.core.domain_models import (
    FundingRange,
    IntentType,
    ProjectSummary,
    SearchDepth,
    SearchIntent,
    SourceCategory,
    TimeConstraint,
)
from funding_discovery.core.errors import ProviderError
from funding_discovery.core.money import coerce_amount
from funding_discovery.core.parsing import parse_llm_json


logger = logging.getLogger(__name__)

HISTORY_TURNS = 5

STOPWORDS = {
    "the", "and", "for", "with", "that", "this", "from", "have", "what", "which",
    "are", "was", "were", "will", "would", "could", "should", "about", "into",
    "there", "their", "them", "they", "your", "some", "any", "more", "most",
    "find", "looking", "need", "want", "help", "show", "give", "please", "also",
    "like", "just", "available", "other", "than", "then", "when", "where",
}

SYSTEM_PROMPT = """You are a funding search strategist. Classify the user's funding search query.

Return a JSON object with exactly these fields:
{
  "intentType": "broad_discovery" | "specific_opportunity" | "project_matching" | "deadline_focused" | "amount_focused",
  "confidence": number between 0 and 1,
  "keywords": [array of search keywords],
  "organizationType": string or null,
  "fundingRange": {"min": number or null, "max": number or null},
  "timeConstraint": "urgent" | "recent" | "flexible",
  "recommendedDepth": "quick" | "standard" | "comprehensive",
  "prioritySources": [subset of "government", "foundation", "corporate", "international", "academic"]
}"""


def tokenize_keywords(query: str) -> List[str]:
    """Lowercase words longer than three characters, stopwords removed, in order."""
    words = re.findall(r"[a-z0-9][a-z0-9\-]*", (query or "").lower())
    seen = set()
    keywords = []
    for word in words:
        if len(word) > 3 and word not in STOPWORDS and word not in seen:
            seen.add(word)
            keywords.append(word)
    return keywords


def heuristic_intent(query: str, organization_type: Optional[str] = None) -> SearchIntent:
    """
    Deterministic intent used when LLM analysis is unavailable.

    Always broad discovery with confidence 0.5 and standard depth.
    """
    return SearchIntent(
        intent_type=IntentType.BROAD_DISCOVERY,
        confidence=0.5,
        keywords=frozenset(tokenize_keywords(query)),
        organization_type=organization_type,
        funding_range=FundingRange(),
        time_constraint=TimeConstraint.FLEXIBLE,
        recommended_depth=SearchDepth.STANDARD,
        priority_sources=frozenset(),
    )


def _enum_or_default(enum_cls, value, default):
    try:
        return enum_cls(str(value).strip().lower())
    except (ValueError, AttributeError):
        return default


def intent_from_payload(payload: Dict[str, Any], query: str) -> SearchIntent:
    """Build a SearchIntent from parsed LLM JSON, tolerating bad field values."""
    try:
        confidence = float(payload.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    confidence = max(0.0, min(1.0, confidence))

    raw_keywords = payload.get("keywords") or []
    if isinstance(raw_keywords, str):
        raw_keywords = raw_keywords.split(",")
    keywords = {str(k).strip().lower() for k in raw_keywords if str(k).strip()}
    if not keywords:
        keywords = set(tokenize_keywords(query))

    funding = payload.get("fundingRange") or {}
    if not isinstance(funding, dict):
        funding = {}

    sources = set()
    for source in payload.get("prioritySources") or []:
        category = _enum_or_default(SourceCategory, source, None)
        if category is not None:
            sources.add(category)

    org_type = payload.get("organizationType")

    return SearchIntent(
        intent_type=_enum_or_default(IntentType, payload.get("intentType"), IntentType.BROAD_DISCOVERY),
        confidence=confidence,
        keywords=frozenset(keywords),
        organization_type=str(org_type) if org_type else None,
        funding_range=FundingRange(
            min=coerce_amount(funding.get("min")),
            max=coerce_amount(funding.get("max")),
        ),
        time_constraint=_enum_or_default(TimeConstraint, payload.get("timeConstraint"), TimeConstraint.FLEXIBLE),
        recommended_depth=_enum_or_default(SearchDepth, payload.get("recommendedDepth"), SearchDepth.STANDARD),
        priority_sources=frozenset(sources),
    )


def _format_history(history: Sequence[Dict[str, Any]]) -> str:
    lines = []
    for turn in list(history)[-HISTORY_TURNS:]:
        role = turn.get("role", "user")
        content = str(turn.get("content", ""))[:300]
        lines.append(f"{role}: {content}")
    return "\n".join(lines) or "(none)"


def _format_projects(projects: Sequence[ProjectSummary]) -> str:
    lines = []
    for p in projects[:5]:
        parts = [p.name or "Unnamed project"]
        if p.category:
            parts.append(f"category: {p.category}")
        if p.funding_needed:
            parts.append(f"needs ${p.funding_needed:,.0f}")
        if p.preferred_funding_types:
            parts.append(f"prefers: {', '.join(p.preferred_funding_types)}")
        lines.append("- " + "; ".join(parts))
    return "\n".join(lines) or "(none)"


class IntentAnalyzer:
    """LLM-backed query classifier with a heuristic fallback."""

    def __init__(self, llm=None):
        """
        Args:
            llm: An LLMChain (or None to always use the heuristic)
        """
        self.llm = llm

    def build_prompt(self, query: str, history: Sequence[Dict[str, Any]],
                     projects: Sequence[ProjectSummary]) -> str:
        return (
            f"CURRENT QUERY:\n{query}\n\n"
            f"RECENT CONVERSATION:\n{_format_history(history)}\n\n"
            f"USER PROJECTS:\n{_format_projects(projects)}\n\n"
            "Classify the query."
        )

    async def analyze(
        self,
        query: str,
        conversation_history: Optional[Sequence[Dict[str, Any]]] = None,
        projects: Optional[Sequence[ProjectSummary]] = None,
        organization_type: Optional[str] = None,
    ) -> SearchIntent:
        """
        Classify the query.

        Returns:
            SearchIntent from the LLM, or the heuristic intent on any failure
        """
        if self.llm is None or not getattr(self.llm, "available", True):
            return heuristic_intent(query, organization_type)

        prompt = self.build_prompt(query, conversation_history or [], projects or [])
        try:
            response = await self.llm.acomplete(SYSTEM_PROMPT, prompt, max_tokens=500, temperature=0.2)
        except ProviderError as e:
            logger.warning(f"Intent analysis unavailable, using heuristic: {e}")
            return heuristic_intent(query, organization_type)
        except Exception as e:
            logger.warning(f"Intent analysis failed unexpectedly, using heuristic: {e}")
            return heuristic_intent(query, organization_type)

        parsed = parse_llm_json(response.content)
        if not parsed.ok:
            logger.warning(f"Intent analysis returned unusable JSON ({parsed.reason}), using heuristic")
            return heuristic_intent(query, organization_type)

        intent = intent_from_payload(parsed.value, query)
        if intent.organization_type is None and organization_type:
            intent = replace(intent, organization_type=organization_type)

        logger.info(
            f"Intent: {intent.intent_type.value} (confidence {intent.confidence:.2f}, "
            f"depth {intent.recommended_depth.value})"
        )
        return intent
