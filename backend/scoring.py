"""
Confidence scoring — a 0-100 heuristic based on which contact fields a lead has.

    base 50
    +25  email containing "@"
    +15  phone
    +10  website
    +10  business name longer than 3 characters
    +5   address / location

The sum is clamped to [0, 100], so a fully populated lead scores 100.
"""

from typing import Any, Mapping

BASE_SCORE = 50
MIN_SCORE = 0
MAX_SCORE = 100


def _field(lead: Any, name: str):
    if isinstance(lead, Mapping):
        return lead.get(name)
    return getattr(lead, name, None)


def calculate_confidence_score(lead: Any) -> int:
    """Score a lead given as a dict or any object with lead attributes."""
    score = BASE_SCORE

    email = _field(lead, "email")
    if email and "@" in email:
        score += 25
    if _field(lead, "phone"):
        score += 15
    if _field(lead, "website"):
        score += 10

    name = _field(lead, "business_name")
    if name and len(name) > 3:
        score += 10
    if _field(lead, "address") or _field(lead, "location"):
        score += 5

    return max(MIN_SCORE, min(MAX_SCORE, score))
