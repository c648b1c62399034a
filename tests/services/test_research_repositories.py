from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy.engine.url import make_url

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
from app.services.research.errors import ResearchNotFoundError
from app.services.research.repositories import (
    InMemoryResearchStore,
    SqlResearchStore,
    _coerce_sync_database_url,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def research_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryResearchStore()
        return
    store = SqlResearchStore(f"sqlite:///{tmp_path / 'research.db'}", auto_create_schema=True)
    yield store
    store.dispose()


def _research(user_id, domain="acme.io", **fields) -> CompanyResearchRecord:
    return CompanyResearchRecord(user_id=user_id, company_domain=domain, **fields)


def _prospect(research: CompanyResearchRecord, **fields) -> ProspectResearchRecord:
    return ProspectResearchRecord(
        user_id=research.user_id,
        company_research_id=research.id,
        campaign_id=research.campaign_id,
        **fields,
    )


def test_campaign_and_company_round_trip(research_store):
    user_id = uuid4()
    campaign = research_store.save_campaign(Campaign(user_id=user_id, name="Q3", pain_points="Cost\nSpeed"))
    company = research_store.save_company(
        Company(campaign_id=campaign.id, user_id=user_id, name="Acme", website="acme.io", selected=True)
    )

    loaded = research_store.get_campaign(campaign.id)
    assert loaded.name == "Q3"
    assert loaded.pain_points == "Cost\nSpeed"
    assert company.selected is False
    assert research_store.get_company(company.id).selected is False
    assert [c.id for c in research_store.list_companies(campaign.id)] == [company.id]
    assert research_store.get_campaign(uuid4()) is None

    research_store.save_campaign(loaded.model_copy(update={"name": "Q4"}))
    assert research_store.get_campaign(campaign.id).name == "Q4"


def test_integrations_define_known_users(research_store):
    user_id = uuid4()
    assert research_store.user_exists(user_id) is False
    research_store.save_integrations(UserIntegrations(user_id=user_id, clay_webhook_url="https://clay.test/a"))
    research_store.save_integrations(UserIntegrations(user_id=user_id, clay_webhook_url="https://clay.test/b"))

    assert research_store.user_exists(user_id) is True
    assert research_store.get_integrations(user_id).clay_webhook_url == "https://clay.test/b"


def test_company_research_round_trip(research_store):
    user_id = uuid4()
    record = research_store.insert_company_research(
        _research(
            user_id,
            status=ResearchStatus.COMPLETED,
            company_status=CompanyStatus.ACQUIRED,
            acquired_by="Globex",
            cloud_provider="GCP",
            cloud_confidence=61.0,
            evidence_urls=["https://acme.io/jobs"],
            raw_data={"company_status": "Acquired", "acquiredBy": "Globex"},
        )
    )

    loaded = research_store.get_company_research(record.id)
    assert loaded.status == ResearchStatus.COMPLETED
    assert loaded.company_status == CompanyStatus.ACQUIRED
    assert loaded.cloud_confidence == 61.0
    assert loaded.evidence_urls == ["https://acme.io/jobs"]
    assert loaded.raw_data == {"company_status": "Acquired", "acquiredBy": "Globex"}

    updated = research_store.update_company_research(loaded.model_copy(update={"error_message": "late"}))
    assert updated.error_message == "late"
    assert research_store.get_company_research(record.id).error_message == "late"


def test_update_of_missing_research_raises(research_store):
    with pytest.raises(ResearchNotFoundError):
        research_store.update_company_research(_research(uuid4()))


def test_latest_and_awaiting_lookups_order_by_creation(research_store):
    user_id = uuid4()
    older = research_store.insert_company_research(_research(user_id, awaiting_receipt=True, created_at=T0))
    newer = research_store.insert_company_research(
        _research(user_id, created_at=T0 + timedelta(minutes=5))
    )
    research_store.insert_company_research(_research(uuid4(), created_at=T0 + timedelta(minutes=9)))

    assert research_store.latest_company_research(user_id, "ACME.io").id == newer.id
    assert research_store.find_awaiting_receipt(user_id, "acme.io").id == older.id
    assert research_store.latest_company_research(user_id, "globex.com") is None

    research_store.update_company_research(older.model_copy(update={"awaiting_receipt": False}))
    assert research_store.find_awaiting_receipt(user_id, "acme.io") is None


def test_prospects_list_newest_first_and_resolve_by_personal_id(research_store):
    research = research_store.insert_company_research(_research(uuid4()))
    first = research_store.insert_prospect(_prospect(research, first_name="Ada", created_at=T0))
    second = research_store.insert_prospect(
        _prospect(research, first_name="Grace", priority=Priority.HIGH, created_at=T0 + timedelta(seconds=1))
    )

    listed = research_store.list_prospects(research.id)
    assert [p.id for p in listed] == [second.id, first.id]
    assert listed[0].priority == Priority.HIGH
    assert research_store.get_prospect_by_personal_id(first.personal_id).id == first.id
    assert research_store.get_prospect_by_personal_id(uuid4()) is None

    research_store.update_prospect(
        first.model_copy(update={"status": ProspectStatus.INPUTTED, "email": "ada@acme.io"})
    )
    stored = research_store.get_prospect(first.id)
    assert stored.status == ProspectStatus.INPUTTED
    assert stored.email == "ada@acme.io"


def test_update_of_missing_prospect_raises(research_store):
    with pytest.raises(ResearchNotFoundError):
        research_store.update_prospect(_prospect(_research(uuid4())))


def test_delete_campaign_cascades_to_research_rows(research_store):
    user_id = uuid4()
    campaign = research_store.save_campaign(Campaign(user_id=user_id, name="Q3"))
    company = research_store.save_company(Company(campaign_id=campaign.id, user_id=user_id, name="Acme"))
    research = research_store.insert_company_research(_research(user_id, campaign_id=campaign.id))
    prospect = research_store.insert_prospect(_prospect(research, first_name="Ada"))
    unrelated = research_store.insert_company_research(_research(user_id, "globex.com"))

    assert research_store.delete_campaign(campaign.id) is True

    assert research_store.get_campaign(campaign.id) is None
    assert research_store.get_company(company.id) is None
    assert research_store.get_company_research(research.id) is None
    assert research_store.get_prospect(prospect.id) is None
    assert research_store.get_company_research(unrelated.id) is not None
    assert research_store.delete_campaign(campaign.id) is False


@pytest.mark.parametrize(
    ("url", "expected_url", "expected_args"),
    [
        (
            "postgresql+asyncpg://user:pw@db.example.com:5432/app",
            "postgresql+psycopg2://user:pw@db.example.com:5432/app",
            {},
        ),
        (
            "postgresql+asyncpg://user:pw@db.example.com/app?ssl=require",
            "postgresql+psycopg2://user:pw@db.example.com/app",
            {"sslmode": "require"},
        ),
        (
            "postgresql+psycopg://user:pw@abc.supabase.co/postgres",
            "postgresql+psycopg2://user:pw@abc.supabase.co/postgres",
            {"sslmode": "require"},
        ),
        ("sqlite+aiosqlite:///./research.db", "sqlite:///./research.db", {"check_same_thread": False}),
    ],
)
def test_coerce_sync_database_url(url, expected_url, expected_args):
    sync_url, connect_args, _ = _coerce_sync_database_url(make_url(url))
    assert sync_url == expected_url
    assert connect_args == expected_args
