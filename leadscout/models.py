from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LeadSource(str, Enum):
    MAPS = "maps"
    SOCIAL = "social"
    REVIEW_SITE_A = "review_site_a"
    REVIEW_SITE_B = "review_site_b"
    TRAVEL_REVIEW = "travel_review"
    TRUST_REVIEW = "trust_review"


# The source used by nearby-city and query-variation expansion
PRIMARY_SOURCE = LeadSource.MAPS


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class LeadStatus(str, Enum):
    PENDING = "pending"
    QUALIFIED = "qualified"


class Tier(str, Enum):
    GOLD = "gold"
    SILVER = "silver"
    BRONZE = "bronze"


def _new_id() -> str:
    return str(uuid.uuid4())


class SearchTask(BaseModel):
    id: str = Field(default_factory=_new_id)
    query: str
    location: str
    source: LeadSource
    status: TaskStatus = TaskStatus.PENDING
    discovered_from_country: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)


class Lead(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    category: str = ""
    address: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    rating: float = 0.0
    review_count: int = 0
    has_whatsapp: Optional[bool] = None
    email_verified: Optional[bool] = None
    source: str = LeadSource.MAPS.value
    status: LeadStatus = LeadStatus.PENDING
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def score(self) -> Optional[int]:
        return self.metadata.get("score")

    @property
    def tier(self) -> Optional[str]:
        return self.metadata.get("tier")


class FilterFlags(BaseModel):
    """Exclusionary toggles plus enrichment switches.

    ``wants_no_website`` keeps only leads *without* a website, while
    ``wants_email``/``wants_phone`` keep only leads *with* that contact.
    The camelCase aliases are the field names used by existing hosts.
    """

    model_config = ConfigDict(populate_by_name=True)

    wants_no_website: bool = Field(default=False, alias="hasWebsite")
    wants_email: bool = Field(default=False, alias="hasEmail")
    wants_phone: bool = Field(default=False, alias="hasPhone")
    auto_verify_whatsapp: bool = Field(default=False, alias="autoVerifyWA")
    auto_verify_email: bool = Field(default=False, alias="autoVerifyEmail")
    auto_find_email: bool = Field(default=False, alias="autoFindEmail")


class Preferences(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    niche: str = Field(..., min_length=1)
    locations: List[str] = Field(..., min_length=1)
    lead_limit: int = Field(..., ge=1, alias="leadLimit")
    services: Optional[str] = None
    filters: FilterFlags = Field(default_factory=FilterFlags)
    sources: List[LeadSource] = Field(default_factory=lambda: list(LeadSource))


class RunOutcome(str, Enum):
    GOAL_REACHED = "goal_reached"
    EXHAUSTED = "exhausted"
    ROUND_LIMIT_REACHED = "round_limit_reached"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RunSummary(BaseModel):
    outcome: RunOutcome
    current_lead_count: int = 0
    target_lead_count: int = 0
    rounds: int = 0
    searched_cities: List[str] = Field(default_factory=list)
    processed_countries: List[str] = Field(default_factory=list)
    exhausted_capabilities: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    leads: List[Lead] = Field(default_factory=list)


class BatchReport(BaseModel):
    received: int = 0
    filtered: int = 0
    duplicates: int = 0
    dropped: int = 0
    committed: int = 0

    def merge(self, other: "BatchReport") -> "BatchReport":
        return BatchReport(
            received=self.received + other.received,
            filtered=self.filtered + other.filtered,
            duplicates=self.duplicates + other.duplicates,
            dropped=self.dropped + other.dropped,
            committed=self.committed + other.committed,
        )
