"""
Fit scoring for (opportunity, project, profile) triples.

Scoring runs in two tiers:

1. Rule-based pre-score. Hard eligibility filters first (organization type,
   request-to-minimum ratio, expired deadline), then four point budgets:
   compliance (30), readiness (25), strategic fit (25) and timing (20).
2. AI strategic score. Skipped when the inputs are complete enough for the
   rules to be trusted ("high" confidence); otherwise blended with the rules
   as round(0.6 * rules + 0.4 * ai). If the model call fails the rule score
   stands on its own.

Opportunity, project and profile are plain dicts using the repository's
column names (`funding_request_amount`, `organization_types`, ...), so rows
from the store and discovery candidates can be scored alike.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from funding_discovery.config import ScoringWeights
from funding_discovery.core.domain_models import Level, ProjectSummary, TimelineUrgency
from funding_discovery.core.errors import ProviderError
from funding_discovery.core.money import coerce_amount
from funding_discovery.core.parsing import parse_llm_json, require_fields
from funding_discovery.core.time_utils import Clock, days_until, now_utc, timeline_urgency
from funding_discovery.core.utils import parse_date_maybe
from funding_discovery.scoring.prompts import BRIEF_SYSTEM_PROMPT, DETAILED_SYSTEM_PROMPT, build_fit_prompt


logger = logging.getLogger(__name__)

FEDERAL_SOURCES = {"grants.gov", "sam.gov", "nih", "nsf"}
FOUNDATION_SOURCES = {"foundation", "candid"}
RELEVANT_CERTIFICATIONS = {"minority_owned", "women_owned", "veteran_owned", "small_disadvantaged_business"}

_WORD_RE = re.compile(r"[a-z0-9]{4,}")


@dataclass
class PreScore:
    """Rule-based tier of fit scoring."""
    eligible_by_rules: bool = True
    confidence: str = "high"
    confidence_points: int = 100
    quick_score: int = 0
    flags: List[str] = field(default_factory=list)
    compliance_score: int = 0
    readiness_score: int = 0
    strategic_fit: int = 0
    timing_score: int = 0
    days_left: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligibleByRules": self.eligible_by_rules,
            "confidence": self.confidence,
            "quickScore": self.quick_score,
            "flags": list(self.flags),
        }


@dataclass
class FitResult:
    """Final fit score with its components and derived fields."""
    final_score: int
    eligible_by_rules: bool
    method: str
    reasoning: str
    pre_score: PreScore
    ai_strategic_score: Optional[float] = None
    competitive_risk: Optional[str] = None
    confidence_level: str = "medium"
    competitiveness: Level = Level.MEDIUM
    timeline_urgency: TimelineUrgency = TimelineUrgency.COMFORTABLE
    application_priority: Level = Level.LOW
    recommendation_strength: str = "minimal"
    ai_details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.final_score = int(max(0, min(100, round(self.final_score))))

    def breakdown(self) -> Dict[str, Any]:
        p = self.pre_score
        return {
            "complianceScore": p.compliance_score,
            "readinessScore": p.readiness_score,
            "strategicFit": p.strategic_fit,
            "timingScore": p.timing_score,
            "ruleBasedScore": p.quick_score,
            "aiStrategicScore": self.ai_strategic_score,
            "method": self.method,
            "confidenceLevel": self.confidence_level,
            "flags": list(p.flags),
        }

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "fitScore": self.final_score,
            "eligibleByRules": self.eligible_by_rules,
            "reasoning": self.reasoning,
            "competitiveRisk": self.competitive_risk,
            "competitiveness": self.competitiveness.value,
            "timelineUrgency": self.timeline_urgency.value,
            "applicationPriority": self.application_priority.value,
            "recommendationStrength": self.recommendation_strength,
            "daysUntilDeadline": self.pre_score.days_left,
        }
        d.update(self.breakdown())
        if self.ai_details:
            d["aiAnalysis"] = dict(self.ai_details)
        return d


def _as_list(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v is not None]


def _lower_list(value) -> List[str]:
    return [v.strip().lower() for v in _as_list(value) if v.strip()]


def _float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def recommendation_strength(score: float) -> str:
    """Bucket a fit score: >=80 high, >=60 medium, >=40 low, else minimal."""
    if score >= 80:
        return "high"
    if score >= 60:
        return "medium"
    if score >= 40:
        return "low"
    return "minimal"


def competitiveness_level(opportunity: Dict[str, Any]) -> Level:
    """
    How contested the opportunity is likely to be.

    Large awards and open eligibility attract more applicants; small,
    narrowly targeted programs and in-kind resources attract fewer.
    """
    points = 0
    amount_max = coerce_amount(opportunity.get("amount_max")) or 0
    if amount_max > 1_000_000:
        points += 2
    elif amount_max > 250_000:
        points += 1
    elif 0 < amount_max < 50_000:
        points -= 1

    org_types = _lower_list(opportunity.get("organization_types"))
    if not org_types or "all" in org_types:
        points += 1
    elif len(org_types) == 1:
        points -= 1

    if len(_as_list(opportunity.get("eligibility"))) >= 3:
        points -= 1

    if str(opportunity.get("source", "")).lower() in FEDERAL_SOURCES:
        points += 1
    if opportunity.get("type") == "resource":
        points -= 1

    if points >= 2:
        return Level.HIGH
    if points <= -1:
        return Level.LOW
    return Level.MEDIUM


def application_priority(fit_score: float, competitiveness: Level,
                         urgency: TimelineUrgency) -> Level:
    """
    Decision table for how soon to work on an application.

    Expired opportunities are always low priority.
    """
    if urgency == TimelineUrgency.EXPIRED:
        return Level.LOW

    time_pressed = urgency in (TimelineUrgency.CRITICAL, TimelineUrgency.URGENT)

    if fit_score >= 80:
        if competitiveness != Level.HIGH or time_pressed:
            return Level.HIGH
        return Level.MEDIUM
    if fit_score >= 60:
        if competitiveness == Level.LOW and time_pressed:
            return Level.HIGH
        return Level.MEDIUM
    if fit_score >= 40:
        return Level.MEDIUM if competitiveness == Level.LOW else Level.LOW
    return Level.LOW


def _project_words(project: ProjectSummary) -> set:
    text = " ".join([
        project.name, project.description, project.category or "",
        project.project_type or "", " ".join(project.keywords), " ".join(project.goals),
    ]).lower()
    return set(_WORD_RE.findall(text))


def quick_match_score(project: ProjectSummary, opportunity: Dict[str, Any]) -> float:
    """
    Keyword overlap between a project and an opportunity, 0-100.

    Project type hits dominate; shared vocabulary fills in the rest.
    """
    project_types = _lower_list(opportunity.get("project_types"))
    own_type = " ".join(filter(None, [
        project.project_type, project.category, project.name, project.description,
    ])).lower()

    score = 0.0
    if project_types and any(t in own_type for t in project_types):
        score += 50

    opp_text = " ".join([
        str(opportunity.get("title") or ""),
        str(opportunity.get("description") or ""),
        " ".join(_as_list(opportunity.get("focus_areas"))),
        " ".join(project_types),
    ]).lower()
    opp_words = set(_WORD_RE.findall(opp_text))
    words = _project_words(project)
    if words and opp_words:
        overlap = len(words & opp_words) / min(len(words), 20)
        score += min(overlap, 1.0) * 50

    return round(min(score, 100.0), 1)


def matching_projects(projects: Sequence[ProjectSummary], opportunity: Dict[str, Any],
                      threshold: float = 50.0) -> List[ProjectSummary]:
    """Projects whose quick match with the opportunity reaches the threshold."""
    return [p for p in projects if quick_match_score(p, opportunity) >= threshold]


def discovery_fit_score(match_score: float, opportunity: Dict[str, Any],
                        projects: Sequence[ProjectSummary],
                        organization_type: Optional[str] = None) -> float:
    """
    Fit score for a freshly discovered opportunity against all of a user's projects.

    40% of the analyzer's match score, up to 25 for a project type match, 20
    when the organization type is eligible and 15 for amount fit.
    """
    score = match_score * 0.4

    project_types = _lower_list(opportunity.get("project_types"))
    if project_types and projects:
        for project in projects:
            own = f"{project.project_type or ''} {project.category or ''} {project.description}".lower()
            if any(t in own for t in project_types):
                score += 25
                break

    if organization_type:
        org = organization_type.lower()
        org_types = _lower_list(opportunity.get("organization_types"))
        eligibility_text = " ".join(_as_list(opportunity.get("eligibility"))).lower()
        if org in org_types or "all" in org_types or org.replace("_", " ") in eligibility_text:
            score += 20

    amount_max = coerce_amount(opportunity.get("amount_max"))
    needs = [p.funding_needed or 0 for p in projects]
    if amount_max and needs:
        average = sum(needs) / len(needs)
        score += min(average / amount_max, 1.0) * 15

    return min(score, 100.0)


class FitScorer:
    """Hybrid rule-based and AI fit scoring."""

    def __init__(self, llm=None, weights: Optional[ScoringWeights] = None, clock: Clock = now_utc):
        """
        Args:
            llm: LLMChain for the strategic score (None: rules only)
            weights: Point budgets and blend weights
            clock: Source of "now" for deadline arithmetic
        """
        self.llm = llm
        self.weights = weights or ScoringWeights()
        self.clock = clock

    # Hard filters

    def _hard_filter(self, opportunity, project, profile, pre: PreScore) -> bool:
        """Record every failed hard filter in `pre.flags`; True if none failed."""
        org_types = _lower_list(opportunity.get("organization_types"))
        org_type = str(profile.get("organization_type") or "").lower()
        if org_types and org_type not in org_types and "all" not in org_types:
            pre.flags.append("organization_type_mismatch")

        request = coerce_amount(project.get("funding_request_amount")) or coerce_amount(project.get("total_project_budget"))
        amount_min = coerce_amount(opportunity.get("amount_min"))
        if amount_min and request:
            ratio = request / amount_min
            if ratio < self.weights.min_amount_ratio or ratio > self.weights.max_amount_ratio:
                pre.flags.append("amount_mismatch")

        if pre.days_left is not None and pre.days_left < 0:
            pre.flags.append("expired")

        return not pre.flags

    # Rule-based sub-scores

    def compliance_score(self, opportunity, profile) -> int:
        score = 0
        source = str(opportunity.get("source") or "").lower()
        opp_type = str(opportunity.get("type") or "").lower()

        if source in FEDERAL_SOURCES or opp_type == "federal_grant":
            if profile.get("ein"):
                score += 3
            if profile.get("duns_uei"):
                score += 4
            if profile.get("sam_registration") in ("active", "current"):
                score += 4
            if profile.get("audit_status") in ("single_audit_current", "single_audit_not_required"):
                score += 2
            if profile.get("indirect_cost_rate") and profile.get("indirect_rate_type"):
                score += 2
        elif source in FOUNDATION_SOURCES or opp_type == "foundation_grant":
            if profile.get("irs_status") in ("501c3_determination", "501c3_pending"):
                score += 4
            if profile.get("board_diversity") and _float(profile.get("board_members")) >= 3:
                score += 3
            if profile.get("audit_status") and profile.get("annual_budget"):
                score += 3
        else:
            # Web-discovered and other sources: general organizational readiness
            if profile.get("ein"):
                score += 4
            if profile.get("sam_registration") in ("active", "current"):
                score += 3
            if profile.get("duns_uei"):
                score += 2
            if profile.get("irs_status") in ("501c3_determination", "501c3_pending"):
                score += 3
            if profile.get("audit_status"):
                score += 2

        certs = set(_lower_list(profile.get("special_certifications")))
        score += min(len(certs & RELEVANT_CERTIFICATIONS) * 2, 5)

        return min(score, self.weights.compliance_max)

    def readiness_score(self, project) -> int:
        status_points = {"planning_complete": 10, "pilot_phase": 8, "ongoing_sustainability": 6}
        score = status_points.get(project.get("current_status"), 3)

        score += {"hired": 4, "identified": 2}.get(project.get("project_director_status"), 0)
        score += {"in_place": 4, "partially_staffed": 2}.get(project.get("key_staff_status"), 0)
        score += {"in_place": 4, "in_progress": 2}.get(project.get("partnership_mous"), 0)

        budget_fields = ("personnel_percentage", "equipment_percentage", "travel_percentage",
                         "indirect_percentage", "other_percentage")
        total = sum(_float(project.get(f)) for f in budget_fields)
        if abs(total - 100) <= 1:
            score += 3

        return min(score, self.weights.readiness_max)

    def strategic_score(self, opportunity, project, profile) -> int:
        score = 0

        focus = _lower_list(profile.get("primary_focus_areas"))
        opp_focus = _lower_list(opportunity.get("focus_areas"))
        if focus and opp_focus:
            hits = [a for a in focus if any(a in o for o in opp_focus)]
            score += min(len(hits) * 3, 10)

        population_text = str(project.get("target_population_description") or "").lower()
        populations = _lower_list(profile.get("populations_served"))
        if population_text and populations:
            hits = [p for p in populations if p in population_text]
            score += min(len(hits) * 2, 8)

        location = str(project.get("project_location") or "").lower()
        service_area = str(profile.get("geographic_service_area") or "").lower()
        if location and service_area and service_area in location:
            score += 4

        if project.get("unique_innovation") and project.get("evidence_base"):
            score += 3

        return min(score, self.weights.strategic_max)

    def timing_score(self, opportunity, project, days_left: Optional[int]) -> int:
        score = 0

        urgency = project.get("urgency_level")
        if days_left is not None and urgency:
            if urgency == "urgent" and days_left < 60:
                score += 8
            elif urgency == "high" and days_left < 120:
                score += 6
            elif urgency == "medium" and days_left > 60:
                score += 5
            else:
                score += 3

        need_by = parse_date_maybe(project.get("funding_decision_needed"))
        award_date = parse_date_maybe(opportunity.get("award_notification_date"))
        if need_by and award_date:
            score += 6 if award_date <= need_by else 2

        start = parse_date_maybe(project.get("proposed_start_date"))
        latest = parse_date_maybe(project.get("latest_useful_start"))
        if start and latest:
            flexibility = (latest - start).days
            if flexibility > 180:
                score += 6
            elif flexibility > 90:
                score += 4
            elif flexibility > 30:
                score += 2

        return min(score, self.weights.timing_max)

    def _confidence(self, opportunity, project, profile) -> int:
        points = 100
        if len(str(opportunity.get("description") or "")) < 100:
            points -= 30
        if not project.get("outcome_measures") or not project.get("output_measures"):
            points -= 20
        if opportunity.get("type") in ("contract", "cooperative_agreement"):
            points -= 15
        if (coerce_amount(opportunity.get("amount_max")) or 0) > 1_000_000:
            points -= 20
        if not profile.get("previous_awards"):
            points -= 15
        return points

    def pre_score(self, opportunity: Dict[str, Any], project: Dict[str, Any],
                  profile: Dict[str, Any]) -> PreScore:
        """Rule-based tier. Ineligible triples come back with flags and a zero score."""
        opportunity = opportunity or {}
        project = project or {}
        profile = profile or {}

        deadline = parse_date_maybe(opportunity.get("deadline_date"))
        pre = PreScore(days_left=days_until(deadline, self.clock()))

        if not self._hard_filter(opportunity, project, profile, pre):
            pre.eligible_by_rules = False
            pre.confidence = "high"
            return pre

        pre.compliance_score = self.compliance_score(opportunity, profile)
        pre.readiness_score = self.readiness_score(project)
        pre.strategic_fit = self.strategic_score(opportunity, project, profile)
        pre.timing_score = self.timing_score(opportunity, project, pre.days_left)
        pre.quick_score = (
            pre.compliance_score + pre.readiness_score + pre.strategic_fit + pre.timing_score
        )

        pre.confidence_points = self._confidence(opportunity, project, profile)
        if pre.confidence_points >= self.weights.high_confidence_threshold:
            pre.confidence = "high"
        elif pre.confidence_points >= self.weights.medium_confidence_threshold:
            pre.confidence = "medium"
        else:
            pre.confidence = "low"

        return pre

    def _ai_score(self, opportunity, project, profile, pre: PreScore) -> Dict[str, Any]:
        """Ask the LLM for a strategic score. Raises ProviderError on any failure."""
        if self.llm is None or not getattr(self.llm, "available", True):
            raise ProviderError("llm", "no LLM configured for fit scoring")

        detailed = (
            pre.quick_score > 60
            or (coerce_amount(opportunity.get("amount_max")) or 0) > 500_000
            or pre.confidence == "low"
        )
        system = DETAILED_SYSTEM_PROMPT if detailed else BRIEF_SYSTEM_PROMPT
        response = self.llm.complete(
            system,
            build_fit_prompt(opportunity, project, profile, pre),
            max_tokens=1000,
            temperature=0.3,
        )

        parsed = require_fields(parse_llm_json(response.content), ["strategic_score"])
        if not parsed.ok:
            raise ProviderError("llm", parsed.reason)

        payload = dict(parsed.value)
        try:
            payload["strategic_score"] = max(0.0, min(100.0, float(payload["strategic_score"])))
        except (TypeError, ValueError) as e:
            raise ProviderError("llm", f"non-numeric strategic_score: {payload['strategic_score']!r}") from e
        return payload

    def _derive(self, result: FitResult, opportunity: Dict[str, Any]) -> FitResult:
        result.competitiveness = competitiveness_level(opportunity)
        result.timeline_urgency = timeline_urgency(result.pre_score.days_left)
        result.application_priority = application_priority(
            result.final_score, result.competitiveness, result.timeline_urgency
        )
        result.recommendation_strength = recommendation_strength(result.final_score)
        return result

    def score(self, opportunity: Dict[str, Any], project: Dict[str, Any],
              profile: Dict[str, Any]) -> FitResult:
        """
        Full fit score for one triple. Never raises for model or data problems.
        """
        opportunity = opportunity or {}
        pre = self.pre_score(opportunity, project, profile)

        if not pre.eligible_by_rules:
            result = FitResult(
                final_score=0,
                eligible_by_rules=False,
                method="ineligible",
                reasoning=f"Ineligible: {', '.join(pre.flags)}",
                pre_score=pre,
                confidence_level="high",
            )
            return self._derive(result, opportunity)

        if pre.confidence == "high" and pre.quick_score > 0:
            result = FitResult(
                final_score=pre.quick_score,
                eligible_by_rules=True,
                method="rule_based_only",
                reasoning="High-confidence rule-based match",
                pre_score=pre,
                confidence_level="high",
            )
            return self._derive(result, opportunity)

        try:
            ai = self._ai_score(opportunity, project or {}, profile or {}, pre)
        except ProviderError as e:
            logger.warning(f"AI fit scoring failed, using rules only: {e}")
            result = FitResult(
                final_score=pre.quick_score,
                eligible_by_rules=True,
                method="rule_based_fallback",
                reasoning="Rule-based scoring only (AI analysis failed)",
                pre_score=pre,
                confidence_level="medium",
            )
            return self._derive(result, opportunity)

        blended = round(
            self.weights.rule_weight * pre.quick_score
            + self.weights.ai_weight * ai["strategic_score"]
        )
        result = FitResult(
            final_score=blended,
            eligible_by_rules=True,
            method="hybrid",
            reasoning=str(ai.get("reasoning") or ""),
            pre_score=pre,
            ai_strategic_score=ai["strategic_score"],
            competitive_risk=ai.get("competitive_risk"),
            confidence_level=pre.confidence,
            ai_details={k: v for k, v in ai.items() if k not in ("strategic_score", "reasoning")},
        )
        return self._derive(result, opportunity)
