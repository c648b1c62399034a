"""Domain models for campaigns, companies and research results."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CompanyStatus(str, Enum):
    """Operating status reported by company research."""

    OPERATING = "Operating"
    ACQUIRED = "Acquired"
    RENAMED = "Renamed"
    BANKRUPT = "Bankrupt"
    NOT_FOUND = "Not_Found"


class ResearchStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProspectStatus(str, Enum):
    """Enrichment lifecycle of a discovered prospect."""

    PENDING = "pending"
    SENT_TO_CLAY = "sent_to_clay"
    INPUTTED = "inputted"
    DUPLICATE = "duplicate"
    FAIL = "fail"


class Priority(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


def coerce_priority(value: object) -> Priority | None:
    """Map free-form priority labels onto the Priority enum."""
    if isinstance(value, Priority):
        return value
    if not value:
        return None
    normalized = str(value).strip().lower()
    for priority in Priority:
        if priority.value.lower() == normalized:
            return priority
    return None


def coerce_confidence(value: object) -> float | None:
    """Read a cloud confidence given as a number, numeric string or percentage."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip().rstrip("%"))
    except ValueError:
        return None


class Campaign(BaseModel):
    """Targeting configuration used to build research payloads."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID | None = None
    name: str
    product: str | None = None
    product_category: str | None = None
    technical_focus: str | None = None
    target_region: str | None = None
    job_titles: str | None = Field(default=None, description="Free text, newline or comma separated.")
    personas: str | None = Field(default=None, description="Free text, newline or comma separated.")
    target_verticals: str | None = None
    primary_angle: str | None = None
    secondary_angle: str | None = None
    pain_points: str | None = Field(default=None, description="Free text, newline or comma separated.")
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(from_attributes=True)


class Company(BaseModel):
    """Target organisation attached to a campaign."""

    id: UUID = Field(default_factory=uuid4)
    campaign_id: UUID | None = None
    user_id: UUID | None = None
    name: str
    website: str | None = None
    linkedin_url: str | None = None
    salesforce_account_id: str | None = None
    selected: bool = Field(default=False, description="UI-only selection flag, never persisted.")
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(from_attributes=True)


class UserIntegrations(BaseModel):
    """Per-user webhook configuration."""

    user_id: UUID
    company_research_webhook_url: str | None = None
    people_research_webhook_url: str | None = None
    clay_webhook_url: str | None = None

    model_config = ConfigDict(from_attributes=True)

    def webhook_for(self, webhook_type: str) -> str | None:
        return {
            "company_research": self.company_research_webhook_url,
            "people_research": self.people_research_webhook_url,
            "clay": self.clay_webhook_url,
        }.get(webhook_type)


class CloudPreference(BaseModel):
    provider: str | None = None
    confidence: float | str | None = None
    evidence_urls: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class CompanyResearchResult(BaseModel):
    """Structured stage-1 output."""

    status: str | None = None
    company: str | None = None
    company_status: CompanyStatus | None = None
    acquiredBy: str | None = None
    effectiveDate: str | None = None
    stillOperatesIndependently: bool | None = None
    cloud_preference: CloudPreference | None = None

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="before")
    @classmethod
    def _coerce_aliases(cls, values: object) -> object:
        if not isinstance(values, dict):
            return values
        values = dict(values)
        if "stillOperatesIndependently" not in values and "still_operates_independently" in values:
            values["stillOperatesIndependently"] = values["still_operates_independently"]
        if "acquiredBy" not in values and "acquired_by" in values:
            values["acquiredBy"] = values["acquired_by"]
        return values

    @field_validator("company_status", mode="before")
    @classmethod
    def _coerce_company_status(cls, value: object) -> object:
        if value is None or isinstance(value, CompanyStatus):
            return value
        normalized = str(value).strip().replace(" ", "_").lower()
        for status in CompanyStatus:
            if status.value.lower() == normalized:
                return status
        return None

    @property
    def qualifies_for_prospecting(self) -> bool:
        """Whether stage 2 may run for this outcome."""
        if self.company_status in (CompanyStatus.OPERATING, CompanyStatus.RENAMED):
            return True
        return self.company_status == CompanyStatus.ACQUIRED and self.stillOperatesIndependently is True


class ResearchContact(BaseModel):
    """Contact discovered by prospect research."""

    first_name: str = ""
    last_name: str = ""
    job_title: str = ""
    pitch_type: str = ""
    linkedin: str = ""
    priority: Priority = Priority.MEDIUM
    priority_reason: str = ""

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _coerce_aliases(cls, values: object) -> object:
        if not isinstance(values, dict):
            return values
        values = {key: value for key, value in values.items() if value is not None}
        if not values.get("linkedin") and values.get("linkedin_url"):
            values["linkedin"] = values["linkedin_url"]
        if not values.get("job_title") and values.get("title"):
            values["job_title"] = values["title"]
        return values

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, value: object) -> object:
        return coerce_priority(value) or Priority.MEDIUM

    @property
    def identity(self) -> tuple[str, str, str]:
        return (
            self.first_name.strip().lower(),
            self.last_name.strip().lower(),
            self.linkedin.strip().lower().rstrip("/"),
        )


class PeopleResearchResult(BaseModel):
    """Structured stage-2 output."""

    status: str | None = None
    company: str | None = None
    contacts: list[ResearchContact] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class CompanyResearchRecord(BaseModel):
    """One research attempt for a (user, company domain) pair."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    company_domain: str
    campaign_id: UUID | None = None
    salesforce_account_id: str | None = None
    company_name: str | None = None
    status: ResearchStatus = ResearchStatus.PROCESSING
    company_status: CompanyStatus | None = None
    acquired_by: str | None = None
    cloud_provider: str | None = None
    cloud_confidence: float | None = None
    evidence_urls: list[str] = Field(default_factory=list)
    raw_data: Any = None
    error_message: str | None = None
    awaiting_receipt: bool = Field(
        default=False,
        description="Created from a synchronous reply and not yet confirmed by the callback.",
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    def to_result(self) -> CompanyResearchResult | None:
        """Rebuild the structured stage-1 result from the stored raw payload."""
        if isinstance(self.raw_data, dict):
            try:
                return CompanyResearchResult.model_validate(self.raw_data)
            except ValueError:
                pass
        if self.company_status is None:
            return None
        cloud = None
        if self.cloud_provider:
            cloud = CloudPreference(
                provider=self.cloud_provider,
                confidence=self.cloud_confidence,
                evidence_urls=list(self.evidence_urls),
            )
        return CompanyResearchResult(
            status=self.status.value,
            company=self.company_name,
            company_status=self.company_status,
            acquiredBy=self.acquired_by,
            cloud_preference=cloud,
        )


class ProspectResearchRecord(BaseModel):
    """One discovered contact, one row per person."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    company_research_id: UUID
    campaign_id: UUID | None = None
    company_id: UUID | None = None
    salesforce_account_id: str | None = None
    salesforce_campaign_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    job_title: str | None = None
    linkedin_url: str | None = None
    priority: Priority | None = None
    priority_reason: str | None = None
    pitch_type: str | None = None
    email: str | None = None
    phone: str | None = None
    status: ProspectStatus = ProspectStatus.PENDING
    sent_to_clay: bool = False
    sent_to_clay_at: datetime | None = None
    personal_id: UUID = Field(default_factory=uuid4)
    raw_data: Any = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    def to_contact(self) -> ResearchContact:
        return ResearchContact(
            first_name=self.first_name or "",
            last_name=self.last_name or "",
            job_title=self.job_title or "",
            pitch_type=self.pitch_type or "",
            linkedin=self.linkedin_url or "",
            priority=self.priority or Priority.MEDIUM,
            priority_reason=self.priority_reason or "",
        )
