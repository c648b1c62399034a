"""Create campaign, company, integration and research tables.

``company_research`` is looked up by (user_id, company_domain) for callback
dedup; ``prospect_research`` rows cascade with their research row and are
found by ``personal_id`` when enrichment results come back.
"""

from __future__ import annotations

import logging

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "4f2a9c1e7b30"
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)

UTC_NOW = sa.text("timezone('utc', now())")


def upgrade() -> None:
    op.create_table(
        "campaigns",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("product", sa.Text(), nullable=True),
        sa.Column("product_category", sa.Text(), nullable=True),
        sa.Column("technical_focus", sa.Text(), nullable=True),
        sa.Column("target_region", sa.Text(), nullable=True),
        sa.Column("job_titles", sa.Text(), nullable=True),
        sa.Column("personas", sa.Text(), nullable=True),
        sa.Column("target_verticals", sa.Text(), nullable=True),
        sa.Column("primary_angle", sa.Text(), nullable=True),
        sa.Column("secondary_angle", sa.Text(), nullable=True),
        sa.Column("pain_points", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=UTC_NOW),
        sa.PrimaryKeyConstraint("id", name="pk_campaigns"),
    )
    op.create_index("ix_campaigns_user_id", "campaigns", ["user_id"], unique=False)

    op.create_table(
        "companies",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("campaign_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("website", sa.String(length=512), nullable=True),
        sa.Column("linkedin_url", sa.String(length=512), nullable=True),
        sa.Column("salesforce_account_id", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=UTC_NOW),
        sa.PrimaryKeyConstraint("id", name="pk_companies"),
    )
    op.create_index("ix_companies_campaign_id", "companies", ["campaign_id"], unique=False)

    op.create_table(
        "user_integrations",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("company_research_webhook_url", sa.String(length=1024), nullable=True),
        sa.Column("people_research_webhook_url", sa.String(length=1024), nullable=True),
        sa.Column("clay_webhook_url", sa.String(length=1024), nullable=True),
        sa.PrimaryKeyConstraint("user_id", name="pk_user_integrations"),
    )

    op.create_table(
        "company_research",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("company_domain", sa.String(length=255), nullable=False),
        sa.Column("campaign_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("salesforce_account_id", sa.String(length=32), nullable=True),
        sa.Column("company_name", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("company_status", sa.String(length=32), nullable=True),
        sa.Column("acquired_by", sa.String(length=255), nullable=True),
        sa.Column("cloud_provider", sa.String(length=64), nullable=True),
        sa.Column("cloud_confidence", sa.Float(), nullable=True),
        sa.Column("evidence_urls", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("raw_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("awaiting_receipt", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=UTC_NOW),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_company_research"),
    )
    op.create_index(
        "ix_company_research_user_domain", "company_research", ["user_id", "company_domain"], unique=False
    )
    op.create_index("ix_company_research_campaign", "company_research", ["campaign_id"], unique=False)

    op.create_table(
        "prospect_research",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("company_research_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("campaign_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("salesforce_account_id", sa.String(length=32), nullable=True),
        sa.Column("salesforce_campaign_id", sa.String(length=32), nullable=True),
        sa.Column("first_name", sa.String(length=255), nullable=True),
        sa.Column("last_name", sa.String(length=255), nullable=True),
        sa.Column("job_title", sa.String(length=255), nullable=True),
        sa.Column("linkedin_url", sa.String(length=512), nullable=True),
        sa.Column("priority", sa.String(length=16), nullable=True),
        sa.Column("priority_reason", sa.Text(), nullable=True),
        sa.Column("pitch_type", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("sent_to_clay", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("sent_to_clay_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("personal_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("raw_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=UTC_NOW),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_prospect_research"),
        sa.ForeignKeyConstraint(
            ["company_research_id"],
            ["company_research.id"],
            name="fk_prospect_research_company_research",
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "ix_prospect_research_company_research", "prospect_research", ["company_research_id"], unique=False
    )
    op.create_index("ix_prospect_research_personal_id", "prospect_research", ["personal_id"], unique=False)
    logger.info("research.migration.applied", extra={"revision": revision})


def downgrade() -> None:
    op.drop_index("ix_prospect_research_personal_id", table_name="prospect_research")
    op.drop_index("ix_prospect_research_company_research", table_name="prospect_research")
    op.drop_table("prospect_research")
    op.drop_index("ix_company_research_campaign", table_name="company_research")
    op.drop_index("ix_company_research_user_domain", table_name="company_research")
    op.drop_table("company_research")
    op.drop_table("user_integrations")
    op.drop_index("ix_companies_campaign_id", table_name="companies")
    op.drop_table("companies")
    op.drop_index("ix_campaigns_user_id", table_name="campaigns")
    op.drop_table("campaigns")
    logger.info("research.migration.reverted", extra={"revision": revision})
