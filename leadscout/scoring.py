import re
from typing import Optional, Tuple

from leadscout.models import FilterFlags, Lead, Tier

# Point rule: every present signal adds, nothing subtracts
POINTS_NO_WEBSITE = 3
POINTS_EMAIL = 2
POINTS_PHONE = 1
POINTS_HIGH_RATING = 1
POINTS_MANY_REVIEWS = 1
POINTS_WHATSAPP = 1

HIGH_RATING = 4.5
MANY_REVIEWS = 50

GOLD_MIN = 5
SILVER_MIN = 3

_NON_DIGIT = re.compile(r"\D+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Last 10 digits of ``phone``; None when fewer than 7 digits."""
    digits = _NON_DIGIT.sub("", phone or "")
    if len(digits) < 7:
        return None
    return digits[-10:]


def _alnum(text: Optional[str]) -> str:
    return _NON_ALNUM.sub("", (text or "").lower())


def fingerprint(lead: Lead) -> str:
    phone = normalize_phone(lead.phone)
    if phone:
        return f"phone:{phone}"
    email = (lead.email or "").strip().lower()
    if email:
        return f"email:{email}"
    return f"name:{_alnum(lead.name)}:{_alnum(lead.address)[:20]}"


def score_points(lead: Lead) -> int:
    score = 0
    if not lead.website:
        score += POINTS_NO_WEBSITE
    if lead.email:
        score += POINTS_EMAIL
    if lead.phone:
        score += POINTS_PHONE
    if (lead.rating or 0) >= HIGH_RATING:
        score += POINTS_HIGH_RATING
    if (lead.review_count or 0) >= MANY_REVIEWS:
        score += POINTS_MANY_REVIEWS
    if lead.has_whatsapp:
        score += POINTS_WHATSAPP
    return score


def tier_for(score: int) -> Tier:
    if score >= GOLD_MIN:
        return Tier.GOLD
    if score >= SILVER_MIN:
        return Tier.SILVER
    return Tier.BRONZE


def apply_score(lead: Lead) -> Tuple[int, Tier]:
    score = score_points(lead)
    tier = tier_for(score)
    lead.metadata["score"] = score
    lead.metadata["tier"] = tier.value
    return score, tier


def passes_filters(lead: Lead, filters: FilterFlags) -> bool:
    """Exclusionary toggles.

    Note the inversion: ``wants_no_website`` keeps leads *lacking* a website,
    while the email/phone flags keep leads that *have* one.
    """
    if filters.wants_no_website and lead.website:
        return False
    if filters.wants_email and not lead.email:
        return False
    if filters.wants_phone and not lead.phone:
        return False
    return True
