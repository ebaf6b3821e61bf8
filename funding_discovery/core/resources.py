"""
Classify an opportunity as a cash grant or a non-monetary resource.

Every stage that needs to know "is this a resource or a grant" goes through
`classify_resource` so that filtering, analysis, and storage agree.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union


# Resource type tag -> phrases that signal it
RESOURCE_SIGNALS: Dict[str, Tuple[str, ...]] = {
    "cloud_credits": ("cloud credits", "cloud credit", "aws credits", "azure credits",
                      "google cloud credits", "compute credits", "gpu credits"),
    "software_grant": ("software grant", "software donation", "free license", "free licenses",
                       "nonprofit license", "donated software", "free software"),
    "ad_credits": ("ad grants", "ad credits", "advertising credits", "google ad grants"),
    "data_credits": ("data credits", "api credits", "free api access", "data access program"),
    "in_kind": ("in-kind", "in kind", "donated goods", "product donation", "pro bono"),
    "mentorship": ("mentorship", "mentoring", "mentor network", "advisors"),
    "training": ("training program", "free training", "workshops", "bootcamp", "curriculum"),
    "technical_assistance": ("technical assistance", "capacity building", "consulting support"),
    "facility_access": ("facility access", "lab access", "office space", "coworking", "makerspace"),
    "equipment": ("equipment donation", "donated equipment", "hardware donation", "equipment loan"),
    "incubator": ("incubator", "incubation program"),
    "accelerator": ("accelerator", "accelerator program"),
    "services": ("donated services", "free services", "volunteer services"),
}

MONETARY_TERMS: Tuple[str, ...] = (
    "grant", "grants", "funding", "award", "cash", "financial support",
    "fellowship", "stipend", "loan", "prize money",
)

# A credit program still mentions "$"; these phrases keep it a resource
_RESOURCE_AMOUNT_CONTEXT = re.compile(
    r"\$\s*[\d,.]+\s*[kmb]?\s*(?:in|of|worth of)?\s*(?:cloud|ad|api|compute|software|service)?\s*credits",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Monetary:
    """A cash funding opportunity."""

    @property
    def is_resource(self) -> bool:
        return False


@dataclass(frozen=True)
class NonMonetaryResource:
    """Donated services, credits, equipment, or support in lieu of cash."""
    types: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_resource(self) -> bool:
        return True


ResourceClassification = Union[Monetary, NonMonetaryResource]


def resource_signals(text: str) -> List[str]:
    """Resource type tags whose phrases appear in text, in table order."""
    text_lower = (text or "").lower()
    return [
        tag for tag, phrases in RESOURCE_SIGNALS.items()
        if any(phrase in text_lower for phrase in phrases)
    ]


def monetary_signals(text: str) -> List[str]:
    text_lower = (text or "").lower()
    return [term for term in MONETARY_TERMS if re.search(rf"\b{re.escape(term)}\b", text_lower)]


def classify_resource(
    text: str,
    llm_flag: Optional[bool] = None,
    llm_types: Optional[List[str]] = None,
) -> ResourceClassification:
    """
    Decide whether an opportunity is monetary or a non-monetary resource.

    An explicit flag from the LLM analysis wins; its resource tags are merged
    with the tags found in the text. Without a flag the text decides: any
    resource signal makes it a resource unless cash vocabulary clearly
    dominates.

    Examples:
        >>> classify_resource("Get $5,000 in AWS credits for nonprofits")
        NonMonetaryResource(types=('cloud_credits',))
        >>> classify_resource("Grants of up to $50,000 for community projects")
        Monetary()
    """
    found = resource_signals(text)

    if llm_flag is not None:
        if not llm_flag:
            return Monetary()
        merged = list(dict.fromkeys(list(llm_types or []) + found))
        return NonMonetaryResource(types=tuple(merged))

    if not found:
        return Monetary()

    money = monetary_signals(text)
    credit_amounts = bool(_RESOURCE_AMOUNT_CONTEXT.search(text or ""))

    if len(money) > 2 * len(found) and not credit_amounts:
        return Monetary()

    return NonMonetaryResource(types=tuple(found))
