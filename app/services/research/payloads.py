"""Build the JSON bodies sent to the research webhooks."""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from app.models.research import Campaign, Company, CompanyResearchResult

_LIST_SPLIT_RE = re.compile(r"[\n,]")
_WHITESPACE_RE = re.compile(r"\s+")


def split_list(text: str | None) -> list[str]:
    """Split free text on newlines or commas, dropping blank items."""
    if not text:
        return []
    return [item.strip() for item in _LIST_SPLIT_RE.split(text) if item.strip()]


def normalize_company_domain(website: str | None, fallback_name: str | None = None) -> str:
    """Reduce a website to its lowercase host without ``www.``.

    Falls back to the company name with whitespace removed when no website is
    known, so two spellings of the same site always compare equal.
    """
    if not website or not website.strip():
        return _WHITESPACE_RE.sub("", (fallback_name or "").lower())
    value = website.strip()
    parsed = urlparse(value if "//" in value else f"https://{value}")
    host = (parsed.netloc or parsed.path).lower()
    if "@" in host:
        host = host.rsplit("@", 1)[1]
    if ":" in host:
        host = host.split(":", 1)[0]
    host = host.split("/", 1)[0]
    if host.startswith("www."):
        host = host[4:]
    return host


def company_domain(company: Company) -> str:
    return normalize_company_domain(company.website, company.name)


def build_campaign_context(campaign: Campaign | None) -> dict[str, Any]:
    if campaign is None:
        return {
            "campaignName": "",
            "product": "",
            "productCategory": "",
            "primaryAngle": "",
            "secondaryAngle": "",
            "targetRegion": "",
            "painPoints": [],
            "targetPersonas": [],
            "targetTitles": [],
            "targetVerticals": [],
            "techFocus": "",
        }
    return {
        "campaignName": campaign.name or "",
        "product": campaign.product or "",
        "productCategory": campaign.product_category or "",
        "primaryAngle": campaign.primary_angle or "",
        "secondaryAngle": campaign.secondary_angle or "",
        "targetRegion": campaign.target_region or "",
        "painPoints": split_list(campaign.pain_points),
        "targetPersonas": split_list(campaign.personas),
        "targetTitles": split_list(campaign.job_titles),
        "targetVerticals": split_list(campaign.target_verticals),
        "techFocus": campaign.technical_focus or "",
    }


def build_company_research_payload(
    campaign: Campaign | None, company: Company, user_id: UUID | str
) -> dict[str, Any]:
    """Stage-1 request body."""
    return {
        "user_id": str(user_id),
        "campaign_id": str(campaign.id) if campaign else None,
        "salesforce_account_id": company.salesforce_account_id,
        "company_domain": company_domain(company),
        "campaign": build_campaign_context(campaign),
        "company": {
            "name": company.name,
            "website": company.website or "",
            "linkedin": company.linkedin_url or "",
        },
    }


def build_prospect_research_payload(
    campaign: Campaign | None,
    company: Company,
    company_data: CompanyResearchResult | dict[str, Any] | None,
    user_id: UUID | str,
    company_research_id: UUID | str | None = None,
) -> dict[str, Any]:
    """Stage-2 request body: the stage-1 body plus the stage-1 outcome."""
    if isinstance(company_data, CompanyResearchResult):
        research: Any = company_data.model_dump(mode="json", exclude_none=True)
    else:
        research = company_data
    payload = build_company_research_payload(campaign, company, user_id)
    payload["company_research_id"] = str(company_research_id) if company_research_id else None
    payload["companyResearch"] = research
    payload["qualify"] = True
    return payload
