"""
Expand a seed query into a set of web search strings.

The expansion is a pure function of its inputs: the same seed, projects,
organization type and year always produce the same ordered list.
"""

from datetime import date
from typing import Iterable, List, Optional, Sequence

from funding_discovery.core.domain_models import ProjectSummary


MAX_QUERIES = 35

SOURCE_MODIFIERS = {
    "government": "federal government grants",
    "foundation": "foundation grants",
    "corporate": "corporate giving program",
    "international": "international development funding",
    "academic": "research grants university",
}

# Upper bound of project funding need (USD) -> search phrase
AMOUNT_TIERS = (
    (25_000, "small grants"),
    (250_000, "mid-size grants"),
    (1_000_000, "large grants"),
    (float("inf"), "major funding awards"),
)

RESOURCE_VOCABULARY = (
    "cloud credits",
    "in-kind donation",
    "technical assistance",
    "software donation program",
    "free services for nonprofits",
    "mentorship program",
    "equipment donation",
    "accelerator program",
)


def amount_tier(projects: Sequence[ProjectSummary]) -> Optional[str]:
    """
    Search phrase for the aggregate funding need of the projects.

    Uses the mean need of projects that state one.
    """
    needs = [p.funding_needed for p in projects if p.funding_needed]
    if not needs:
        return None

    average = sum(needs) / len(needs)
    for ceiling, phrase in AMOUNT_TIERS:
        if average <= ceiling:
            return phrase
    return None


def _project_terms(projects: Sequence[ProjectSummary]) -> List[str]:
    """Distinct category, type, goal, funding-type and keyword terms."""
    terms: List[str] = []
    for project in projects:
        for term in (project.category, project.project_type):
            if term:
                terms.append(term.replace("_", " "))
        terms.extend(project.preferred_funding_types[:2])
        terms.extend(project.keywords[:3])
        terms.extend(goal for goal in project.goals[:2] if len(goal) <= 60)

    seen = set()
    unique = []
    for term in terms:
        key = term.strip().lower()
        if key and key not in seen:
            seen.add(key)
            unique.append(term.strip())
    return unique


def _dedupe(queries: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for q in queries:
        q = " ".join(q.split())
        key = q.lower()
        if q and key not in seen:
            seen.add(key)
            result.append(q)
    return result


def expand_queries(
    seed: str,
    projects: Optional[Sequence[ProjectSummary]] = None,
    organization_type: Optional[str] = None,
    resource_only: bool = False,
    year: Optional[int] = None,
    limit: int = MAX_QUERIES,
) -> List[str]:
    """
    Build an ordered list of search strings for a seed query.

    Order: resource variants (resource-only mode), base variations,
    organization type, project terms, amount tier, source categories, then
    current-year terms. Duplicates are removed and the list is capped at
    `limit` (35).

    Args:
        seed: User's query, e.g. "clean energy nonprofit"
        projects: Summaries of the user's projects
        organization_type: e.g. "nonprofit", "small_business"
        resource_only: Bias toward non-monetary resources
        year: Year used for time-sensitive terms (defaults to today's)
        limit: Maximum number of queries

    Returns:
        List of query strings
    """
    seed = " ".join((seed or "").split()) or "funding opportunities"
    projects = list(projects or [])
    year = year or date.today().year
    queries: List[str] = []

    if resource_only:
        for phrase in RESOURCE_VOCABULARY:
            queries.append(f"{seed} {phrase}")
        if organization_type:
            queries.append(f"{organization_type.replace('_', ' ')} {seed} in-kind resources")
    else:
        queries.append(f"{seed} grants funding opportunities")
        queries.append(f"{seed} foundation funding")
        queries.append(f"{seed} federal grants")

    if organization_type:
        org = organization_type.replace("_", " ")
        queries.append(f"{org} {seed} grants")
        queries.append(f"{org} funding {seed}")

    for term in _project_terms(projects)[:6]:
        suffix = "resources" if resource_only else "funding"
        queries.append(f"{seed} {term} {suffix}")

    tier = amount_tier(projects)
    if tier and not resource_only:
        queries.append(f"{seed} {tier}")

    for modifier in SOURCE_MODIFIERS.values():
        queries.append(f"{seed} {modifier}")

    queries.append(f"{seed} grants {year}")
    queries.append(f"{seed} funding opportunities {year}")
    queries.append(f"{seed} grants deadline {year}")

    if not resource_only:
        queries.append(f"{seed} small grants funding")
        queries.append(f"{seed} seed funding grants")
        queries.append(f"{seed} cloud credits in-kind support")

    return _dedupe(queries)[:limit]
