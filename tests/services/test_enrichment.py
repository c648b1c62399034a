from __future__ import annotations

from uuid import uuid4

import httpx
import pytest

from app.models.research import (
    CompanyResearchRecord,
    ProspectResearchRecord,
    ProspectStatus,
    ResearchStatus,
    UserIntegrations,
)
from app.services.research.enrichment import EnrichmentService
from app.services.research.errors import ResearchNotFoundError, ResearchValidationError
from tests.helpers.research_agents import CLAY_URL


@pytest.fixture
def enrichment(store, agents):
    return EnrichmentService(store, agents.clay_client(), webhook_defaults={})


@pytest.fixture
def research(store, user_id):
    return store.insert_company_research(
        CompanyResearchRecord(
            user_id=user_id,
            company_domain="acme.io",
            status=ResearchStatus.COMPLETED,
            salesforce_account_id="001ACME",
        )
    )


def _prospect(store, user_id, research, **fields) -> ProspectResearchRecord:
    return store.insert_prospect(
        ProspectResearchRecord(
            user_id=user_id,
            company_research_id=research.id,
            first_name="Ada",
            last_name="Lovelace",
            linkedin_url="https://linkedin.com/in/ada",
            salesforce_campaign_id="701Q3",
            **fields,
        )
    )


def test_send_to_clay_marks_prospects_sent(enrichment, agents, store, user_id, research):
    agents.script(CLAY_URL, httpx.Response(200, text="queued"))
    prospect = _prospect(store, user_id, research)

    result = enrichment.send_to_clay(user_id, [prospect.id])

    assert result == {
        "success": True,
        "sent": 1,
        "failed": 0,
        "results": [{"prospect_id": str(prospect.id), "success": True}],
    }
    (payload,) = agents.payloads(CLAY_URL)
    assert payload == {
        "personal_id": str(prospect.personal_id),
        "linkedin_url": "https://linkedin.com/in/ada",
        "salesforce_account_id": "001ACME",
        "salesforce_campaign_id": "701Q3",
    }
    stored = store.get_prospect(prospect.id)
    assert stored.sent_to_clay is True
    assert stored.sent_to_clay_at is not None
    assert stored.status == ProspectStatus.SENT_TO_CLAY


def test_send_to_clay_reports_per_prospect_failures(enrichment, agents, store, user_id, research):
    agents.script(CLAY_URL, httpx.Response(200, text="queued"))
    ready = _prospect(store, user_id, research)
    processed = _prospect(store, user_id, research, sent_to_clay=True, status=ProspectStatus.INPUTTED)
    pending_research = store.insert_company_research(
        CompanyResearchRecord(user_id=user_id, company_domain="globex.com", status=ResearchStatus.PROCESSING)
    )
    unfinished = _prospect(store, user_id, pending_research)
    foreign = _prospect(store, uuid4(), research)
    missing = uuid4()

    result = enrichment.send_to_clay(user_id, [ready.id, processed.id, unfinished.id, foreign.id, missing])

    errors = {entry["prospect_id"]: entry.get("error") for entry in result["results"]}
    assert result["success"] is False
    assert result["sent"] == 1
    assert result["failed"] == 4
    assert errors[str(ready.id)] is None
    assert errors[str(processed.id)] == "Already processed by Clay"
    assert errors[str(unfinished.id)] == "Company research is not completed"
    assert errors[str(foreign.id)] == "Prospect not found"
    assert errors[str(missing)] == "Prospect not found"
    assert len(agents.payloads(CLAY_URL)) == 1


def test_clay_http_error_leaves_prospect_unsent(enrichment, agents, store, user_id, research):
    agents.script(CLAY_URL, httpx.Response(500, text="boom"))
    prospect = _prospect(store, user_id, research)

    result = enrichment.send_to_clay(user_id, [prospect.id])

    assert result["results"][0]["error"] == "Clay request failed: 500 - boom"
    stored = store.get_prospect(prospect.id)
    assert stored.sent_to_clay is False
    assert stored.status == ProspectStatus.PENDING


def test_send_to_clay_validates_input(enrichment, store, user_id):
    with pytest.raises(ResearchValidationError):
        enrichment.send_to_clay(user_id, [])

    store.save_integrations(UserIntegrations(user_id=user_id))
    with pytest.raises(ResearchValidationError) as excinfo:
        enrichment.send_to_clay(user_id, [uuid4()])
    assert excinfo.value.code == "400_CLAY_NOT_CONFIGURED"


@pytest.mark.parametrize("status", ["inputted", "DUPLICATE", ProspectStatus.FAIL])
def test_record_enrichment_result_applies_outcome(enrichment, store, user_id, research, status):
    prospect = _prospect(store, user_id, research, sent_to_clay=True, status=ProspectStatus.SENT_TO_CLAY)

    updated = enrichment.record_enrichment_result(
        prospect.personal_id, status, email=" ada@acme.io ", phone="+1 555 0100"
    )

    assert updated.status.value == str(getattr(status, "value", status)).lower()
    assert updated.email == "ada@acme.io"
    assert updated.phone == "+1 555 0100"
    assert store.get_prospect(prospect.id).status == updated.status


@pytest.mark.parametrize("status", ["sent_to_clay", "pending", "enriched"])
def test_record_enrichment_result_rejects_other_statuses(enrichment, store, user_id, research, status):
    prospect = _prospect(store, user_id, research)
    with pytest.raises(ResearchValidationError):
        enrichment.record_enrichment_result(prospect.personal_id, status)


def test_record_enrichment_result_requires_known_personal_id(enrichment):
    with pytest.raises(ResearchNotFoundError):
        enrichment.record_enrichment_result(uuid4(), "inputted")
