"""
Pull eligibility statements out of page text.

Runs after the main content extraction with its own pattern families, so
the opportunity analyzer gets eligibility lines even when they fell outside
the 2000-character excerpt.
"""

import re
from typing import List


# (family, pattern); each pattern captures one sentence-like statement
ELIGIBILITY_PATTERNS = [
    ("who_can_apply", r"(?:who (?:can|may|is eligible to) apply|eligible applicants?|eligibility)\s*[:\-]?\s*([^.\n]{15,300})"),
    ("open_to", r"(?:open to|available to|designed for|intended for)\s+([^.\n]{10,250})"),
    ("must_be", r"(?:applicants?|organizations?|candidates?) must (?:be|have)\s+([^.\n]{10,250})"),
    ("org_status", r"((?:registered\s+)?501\s*\(?c\)?\s*\(?3\)?[^.\n]{0,200})"),
    ("org_type", r"((?:nonprofit|non-profit|small business(?:es)?|startups?|universit(?:y|ies)|tribal (?:governments?|nations?)|municipalit(?:y|ies)|school districts?)s?\s+(?:are|is)\s+eligible[^.\n]{0,200})"),
    ("geography", r"((?:based|located|operating|headquartered) in\s+[^.\n]{3,150})"),
    ("size", r"((?:fewer than|less than|up to|no more than)\s+\d[\d,]*\s+(?:employees|staff)[^.\n]{0,150})"),
    ("revenue", r"((?:annual (?:revenue|budget)|operating budget)\s+(?:of\s+)?(?:under|below|less than|up to)\s+\$[\d,.]+\s*[kmb]?[^.\n]{0,150})"),
    ("exclusions", r"((?:not eligible|ineligible|cannot apply|are excluded)[^.\n]{5,250})"),
]

_COMPILED = [(family, re.compile(pattern, re.IGNORECASE)) for family, pattern in ELIGIBILITY_PATTERNS]

MAX_CRITERIA = 10


def _normalise(statement: str) -> str:
    statement = re.sub(r"\s+", " ", statement).strip(" :;,-")
    return statement[0].upper() + statement[1:] if statement else statement


def extract_eligibility(text: str, max_criteria: int = MAX_CRITERIA) -> List[str]:
    """
    Eligibility statements found in text, de-duplicated, in pattern order.

    Examples:
        >>> extract_eligibility("Eligibility: registered 501(c)(3) organizations in Ohio.")
        ['Registered 501(c)(3) organizations in Ohio']
    """
    if not text:
        return []

    criteria: List[str] = []
    seen = set()

    for _family, pattern in _COMPILED:
        for match in pattern.finditer(text):
            statement = _normalise(match.group(1))
            key = statement.lower()
            if len(statement) < 10:
                continue
            # Skip statements already contained in a longer one
            if key in seen or any(key in s for s in seen):
                continue
            seen.add(key)
            criteria.append(statement)
            if len(criteria) >= max_criteria:
                return criteria

    return criteria
