"""SQLModel mappings for campaigns, companies and research rows."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Boolean, Column, DateTime, Float, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import expression
from sqlmodel import Field, SQLModel

from app.models.research import (
    Campaign,
    Company,
    CompanyResearchRecord,
    CompanyStatus,
    Priority,
    ProspectResearchRecord,
    ProspectStatus,
    ResearchStatus,
    UserIntegrations,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


class UtcNow(expression.FunctionElement):
    """Dialect-aware server default that pins timestamps to UTC."""

    type = DateTime(timezone=True)
    inherit_cache = True


@compiles(UtcNow)
def _utc_now_default(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "CURRENT_TIMESTAMP"


@compiles(UtcNow, "postgresql")
def _utc_now_default_postgres(
    element, compiler, **kwargs
) -> str:  # pragma: no cover - trivial sql generator
    return "timezone('utc', now())"


def _created_at_column() -> Column:
    return Column(DateTime(timezone=True), nullable=False, server_default=UtcNow())


def _uuid_column(*, primary_key: bool = False, nullable: bool = True, index: bool = False) -> Column:
    return Column(Uuid(as_uuid=True), primary_key=primary_key, nullable=nullable, index=index)


class CampaignRow(SQLModel, table=True):
    """ORM model for campaigns."""

    __tablename__ = "campaigns"

    id: UUID = Field(default_factory=uuid4, sa_column=_uuid_column(primary_key=True, nullable=False))
    user_id: UUID | None = Field(default=None, sa_column=_uuid_column(index=True))
    name: str = Field(sa_column=Column(String(length=255), nullable=False))
    product: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    product_category: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    technical_focus: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    target_region: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    job_titles: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    personas: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    target_verticals: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    primary_angle: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    secondary_angle: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    pain_points: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_created_at_column())

    @classmethod
    def from_campaign(cls, campaign: Campaign) -> CampaignRow:
        return cls(**campaign.model_dump())

    def to_campaign(self) -> Campaign:
        return Campaign.model_validate(self)


class CompanyRow(SQLModel, table=True):
    """ORM model for companies; the selection flag is never stored."""

    __tablename__ = "companies"

    id: UUID = Field(default_factory=uuid4, sa_column=_uuid_column(primary_key=True, nullable=False))
    campaign_id: UUID | None = Field(default=None, sa_column=_uuid_column(index=True))
    user_id: UUID | None = Field(default=None, sa_column=_uuid_column())
    name: str = Field(sa_column=Column(String(length=255), nullable=False))
    website: str | None = Field(default=None, sa_column=Column(String(length=512), nullable=True))
    linkedin_url: str | None = Field(default=None, sa_column=Column(String(length=512), nullable=True))
    salesforce_account_id: str | None = Field(
        default=None, sa_column=Column(String(length=32), nullable=True)
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_created_at_column())

    @classmethod
    def from_company(cls, company: Company) -> CompanyRow:
        return cls(**company.model_dump(exclude={"selected"}))

    def to_company(self) -> Company:
        return Company.model_validate(self)


class UserIntegrationsRow(SQLModel, table=True):
    """ORM model for per-user webhook settings."""

    __tablename__ = "user_integrations"

    user_id: UUID = Field(sa_column=_uuid_column(primary_key=True, nullable=False))
    company_research_webhook_url: str | None = Field(
        default=None, sa_column=Column(String(length=1024), nullable=True)
    )
    people_research_webhook_url: str | None = Field(
        default=None, sa_column=Column(String(length=1024), nullable=True)
    )
    clay_webhook_url: str | None = Field(default=None, sa_column=Column(String(length=1024), nullable=True))

    @classmethod
    def from_integrations(cls, integrations: UserIntegrations) -> UserIntegrationsRow:
        return cls(**integrations.model_dump())

    def to_integrations(self) -> UserIntegrations:
        return UserIntegrations.model_validate(self)


class CompanyResearchRow(SQLModel, table=True):
    """ORM model for stage-1 research attempts."""

    __tablename__ = "company_research"
    __table_args__ = (
        sa.Index("ix_company_research_user_domain", "user_id", "company_domain"),
        sa.Index("ix_company_research_campaign", "campaign_id"),
    )

    id: UUID = Field(default_factory=uuid4, sa_column=_uuid_column(primary_key=True, nullable=False))
    user_id: UUID = Field(sa_column=_uuid_column(nullable=False))
    company_domain: str = Field(sa_column=Column(String(length=255), nullable=False))
    campaign_id: UUID | None = Field(default=None, sa_column=_uuid_column())
    salesforce_account_id: str | None = Field(
        default=None, sa_column=Column(String(length=32), nullable=True)
    )
    company_name: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    status: str = Field(sa_column=Column(String(length=32), nullable=False))
    company_status: str | None = Field(default=None, sa_column=Column(String(length=32), nullable=True))
    acquired_by: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    cloud_provider: str | None = Field(default=None, sa_column=Column(String(length=64), nullable=True))
    cloud_confidence: float | None = Field(default=None, sa_column=Column(Float, nullable=True))
    evidence_urls: list[str] = Field(
        default_factory=list, sa_column=Column(JSON_BACKING_TYPE, nullable=False)
    )
    raw_data: Any = Field(default=None, sa_column=Column(JSON_BACKING_TYPE, nullable=True))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    awaiting_receipt: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_created_at_column())
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True, onupdate=UtcNow())
    )

    @classmethod
    def from_record(cls, record: CompanyResearchRecord) -> CompanyResearchRow:
        payload = record.model_dump(mode="python")
        payload["status"] = record.status.value
        payload["company_status"] = record.company_status.value if record.company_status else None
        return cls(**payload)

    def apply(self, record: CompanyResearchRecord) -> None:
        """Copy mutable fields from a domain record onto this row."""
        for key, value in CompanyResearchRow.from_record(record).model_dump(exclude={"id", "created_at"}).items():
            setattr(self, key, value)

    def to_record(self) -> CompanyResearchRecord:
        return CompanyResearchRecord(
            id=self.id,
            user_id=self.user_id,
            company_domain=self.company_domain,
            campaign_id=self.campaign_id,
            salesforce_account_id=self.salesforce_account_id,
            company_name=self.company_name,
            status=ResearchStatus(self.status),
            company_status=CompanyStatus(self.company_status) if self.company_status else None,
            acquired_by=self.acquired_by,
            cloud_provider=self.cloud_provider,
            cloud_confidence=self.cloud_confidence,
            evidence_urls=list(self.evidence_urls or []),
            raw_data=self.raw_data,
            error_message=self.error_message,
            awaiting_receipt=self.awaiting_receipt,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class ProspectResearchRow(SQLModel, table=True):
    """ORM model for discovered prospects, one row per person."""

    __tablename__ = "prospect_research"
    __table_args__ = (
        sa.Index("ix_prospect_research_company_research", "company_research_id"),
        sa.Index("ix_prospect_research_personal_id", "personal_id"),
    )

    id: UUID = Field(default_factory=uuid4, sa_column=_uuid_column(primary_key=True, nullable=False))
    user_id: UUID = Field(sa_column=_uuid_column(nullable=False))
    company_research_id: UUID = Field(
        sa_column=Column(
            Uuid(as_uuid=True),
            sa.ForeignKey("company_research.id", ondelete="CASCADE"),
            nullable=False,
        )
    )
    campaign_id: UUID | None = Field(default=None, sa_column=_uuid_column())
    company_id: UUID | None = Field(default=None, sa_column=_uuid_column())
    salesforce_account_id: str | None = Field(
        default=None, sa_column=Column(String(length=32), nullable=True)
    )
    salesforce_campaign_id: str | None = Field(
        default=None, sa_column=Column(String(length=32), nullable=True)
    )
    first_name: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    last_name: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    job_title: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    linkedin_url: str | None = Field(default=None, sa_column=Column(String(length=512), nullable=True))
    priority: str | None = Field(default=None, sa_column=Column(String(length=16), nullable=True))
    priority_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    pitch_type: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    email: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    phone: str | None = Field(default=None, sa_column=Column(String(length=64), nullable=True))
    status: str = Field(sa_column=Column(String(length=32), nullable=False))
    sent_to_clay: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    sent_to_clay_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    personal_id: UUID = Field(default_factory=uuid4, sa_column=_uuid_column(nullable=False))
    raw_data: Any = Field(default=None, sa_column=Column(JSON_BACKING_TYPE, nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=_created_at_column())
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True, onupdate=UtcNow())
    )

    @classmethod
    def from_record(cls, record: ProspectResearchRecord) -> ProspectResearchRow:
        payload = record.model_dump(mode="python")
        payload["status"] = record.status.value
        payload["priority"] = record.priority.value if record.priority else None
        return cls(**payload)

    def apply(self, record: ProspectResearchRecord) -> None:
        """Copy mutable fields from a domain record onto this row."""
        for key, value in ProspectResearchRow.from_record(record).model_dump(exclude={"id", "created_at"}).items():
            setattr(self, key, value)

    def to_record(self) -> ProspectResearchRecord:
        return ProspectResearchRecord(
            id=self.id,
            user_id=self.user_id,
            company_research_id=self.company_research_id,
            campaign_id=self.campaign_id,
            company_id=self.company_id,
            salesforce_account_id=self.salesforce_account_id,
            salesforce_campaign_id=self.salesforce_campaign_id,
            first_name=self.first_name,
            last_name=self.last_name,
            job_title=self.job_title,
            linkedin_url=self.linkedin_url,
            priority=Priority(self.priority) if self.priority else None,
            priority_reason=self.priority_reason,
            pitch_type=self.pitch_type,
            email=self.email,
            phone=self.phone,
            status=ProspectStatus(self.status),
            sent_to_clay=self.sent_to_clay,
            sent_to_clay_at=self.sent_to_clay_at,
            personal_id=self.personal_id,
            raw_data=self.raw_data,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
