"""
Canonical domain models for the funding discovery pipeline.

Each stage of the pipeline produces one of these records and hands it to the
next stage:

    SearchResult -> ExtractedContent -> OpportunityCandidate -> ScoredOpportunity

CacheRecord is owned by the scoring cache and is independent of discovery.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, FrozenSet

from funding_discovery.core.money import coerce_amount


class IntentType(str, Enum):
    BROAD_DISCOVERY = "broad_discovery"
    SPECIFIC_OPPORTUNITY = "specific_opportunity"
    PROJECT_MATCHING = "project_matching"
    DEADLINE_FOCUSED = "deadline_focused"
    AMOUNT_FOCUSED = "amount_focused"


class TimeConstraint(str, Enum):
    URGENT = "urgent"
    RECENT = "recent"
    FLEXIBLE = "flexible"


class SearchDepth(str, Enum):
    QUICK = "quick"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class SourceCategory(str, Enum):
    GOVERNMENT = "government"
    FOUNDATION = "foundation"
    CORPORATE = "corporate"
    INTERNATIONAL = "international"
    ACADEMIC = "academic"


class Level(str, Enum):
    """Three-step scale used for competitiveness and application priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TimelineUrgency(str, Enum):
    EXPIRED = "expired"
    CRITICAL = "critical"
    URGENT = "urgent"
    MODERATE = "moderate"
    COMFORTABLE = "comfortable"


class CacheStatus(str, Enum):
    SCORED = "scored"
    NEEDS_SCORING = "needs_scoring"


@dataclass(frozen=True)
class FundingRange:
    min: Optional[float] = None
    max: Optional[float] = None


@dataclass(frozen=True)
class SearchIntent:
    """
    Classification of a discovery query.

    Produced once per discovery request and never mutated afterwards.
    """
    intent_type: IntentType = IntentType.BROAD_DISCOVERY
    confidence: float = 0.5
    keywords: FrozenSet[str] = frozenset()
    organization_type: Optional[str] = None
    funding_range: FundingRange = FundingRange()
    time_constraint: TimeConstraint = TimeConstraint.FLEXIBLE
    recommended_depth: SearchDepth = SearchDepth.STANDARD
    priority_sources: FrozenSet[SourceCategory] = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intentType": self.intent_type.value,
            "confidence": self.confidence,
            "keywords": sorted(self.keywords),
            "organizationType": self.organization_type,
            "fundingRange": {"min": self.funding_range.min, "max": self.funding_range.max},
            "timeConstraint": self.time_constraint.value,
            "recommendedDepth": self.recommended_depth.value,
            "prioritySources": sorted(s.value for s in self.priority_sources),
        }


def _split_terms(value) -> List[str]:
    """Comma-separated string or list of terms as a clean list."""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


@dataclass
class ProjectSummary:
    """
    Compact view of a user project, as used for query building and prompts.

    Scoring works on the full repository row; this is only the subset the
    discovery stages need.
    """
    id: Optional[str] = None
    name: str = ""
    category: Optional[str] = None
    project_type: Optional[str] = None
    description: str = ""
    goals: List[str] = field(default_factory=list)
    preferred_funding_types: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    funding_needed: Optional[float] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProjectSummary":
        goals = row.get("primary_goals") or row.get("goals") or []
        if isinstance(goals, str):
            goals = [goals]
        keywords = _split_terms(row.get("keywords"))
        funding_types = _split_terms(row.get("preferred_funding_types"))

        funding = (
            row.get("funding_request_amount")
            or row.get("funding_needed")
            or row.get("total_project_budget")
        )

        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            name=row.get("name") or row.get("title") or "",
            category=row.get("project_category") or row.get("category"),
            project_type=row.get("project_type"),
            description=row.get("description") or "",
            goals=list(goals),
            preferred_funding_types=funding_types,
            keywords=list(keywords),
            funding_needed=coerce_amount(funding),
        )


@dataclass
class SearchResult:
    """Raw search hit. The URL is the identity of the result."""
    title: str
    url: str
    snippet: str = ""
    provider: str = ""
    position: Optional[int] = None
    published_date: Optional[str] = None


@dataclass
class ExtractedContent:
    """Search result enriched with a funding-focused text excerpt."""
    result: SearchResult
    text: str
    eligibility_criteria: List[str] = field(default_factory=list)
    extracted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def url(self) -> str:
        return self.result.url

    @property
    def title(self) -> str:
        return self.result.title


@dataclass
class OpportunityCandidate:
    """Structured opportunity record produced by the LLM analyzer."""
    content: ExtractedContent
    is_valid: bool
    program_name: str
    sponsor: str
    amount_min: Optional[float] = None
    amount_max: Optional[float] = None
    deadline: Optional[date] = None
    eligibility: List[str] = field(default_factory=list)
    project_types: List[str] = field(default_factory=list)
    is_non_monetary_resource: bool = False
    resource_types: List[str] = field(default_factory=list)
    match_score: float = 0.0
    confidence: float = 0.0

    organization_types: List[str] = field(default_factory=list)
    focus_areas: List[str] = field(default_factory=list)
    application_requirements: str = ""
    key_information: str = ""
    match_factors: List[str] = field(default_factory=list)
    recommended_next_steps: str = ""

    @property
    def url(self) -> str:
        return self.content.url

    def to_scoring_dict(self) -> Dict[str, Any]:
        """Opportunity fields in the shape the fit scorer reads."""
        return {
            "title": self.program_name,
            "sponsor": self.sponsor,
            "description": self.key_information or self.content.text,
            "amount_min": self.amount_min,
            "amount_max": self.amount_max,
            "deadline_date": self.deadline.isoformat() if self.deadline else None,
            "organization_types": list(self.organization_types),
            "focus_areas": list(self.focus_areas),
            "project_types": list(self.project_types),
            "eligibility": list(self.eligibility),
            "source": "ai_web_discovery",
            "type": "resource" if self.is_non_monetary_resource else "grant",
        }


def _clamp_score(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


@dataclass
class ScoredOpportunity:
    """Terminal output of discovery; persisted by the opportunity store."""
    candidate: OpportunityCandidate
    fit_score: float
    competitiveness: Level = Level.MEDIUM
    timeline_urgency: TimelineUrgency = TimelineUrgency.COMFORTABLE
    application_priority: Level = Level.MEDIUM
    matching_project_ids: List[str] = field(default_factory=list)
    recommendation_strength: str = "minimal"
    score_breakdown: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.fit_score = _clamp_score(self.fit_score)

    @property
    def url(self) -> str:
        return self.candidate.url

    @property
    def needs_review(self) -> bool:
        return self.fit_score < 70

    def summary(self, opportunity_id: Optional[str] = None) -> Dict[str, Any]:
        c = self.candidate
        return {
            "id": opportunity_id,
            "title": c.program_name,
            "sponsor": c.sponsor,
            "deadline": c.deadline.isoformat() if c.deadline else None,
            "sourceUrl": c.url,
            "fitScore": self.fit_score,
            "isNonMonetaryResource": c.is_non_monetary_resource,
            "applicationPriority": self.application_priority.value,
            "timelineUrgency": self.timeline_urgency.value,
        }


@dataclass
class CacheRecord:
    """Cached score for one (user, project, opportunity) triple."""
    user_id: str
    project_id: str
    opportunity_id: str
    fit_score: float
    analysis_payload: Dict[str, Any] = field(default_factory=dict)
    calculated_at: Optional[datetime] = None
    status: CacheStatus = CacheStatus.SCORED

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["calculated_at"] = self.calculated_at.isoformat() if self.calculated_at else None
        return d
