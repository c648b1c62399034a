from __future__ import annotations

import asyncio
import json
from uuid import UUID, uuid4

import httpx
import pytest

from app.clients.research_webhook import ResearchWebhookClient
from app.models.research import (
    CompanyResearchRecord,
    CompanyStatus,
    Priority,
    ProspectStatus,
    ResearchStatus,
    UserIntegrations,
)
from app.services.research.errors import (
    PARSE_FAILURE_MESSAGE,
    ResearchNotFoundError,
    ResearchValidationError,
)
from app.services.research.events import ProspectResearchInserted
from app.services.research.receiver import ResultReceiver
from tests.helpers.research_agents import COMPANY_URL, PEOPLE_URL, fenced

OPERATING = {
    "status": "completed",
    "company": "Acme",
    "company_status": "Operating",
    "cloud_preference": {"provider": "Azure", "confidence": 0.72, "evidence_urls": ["https://acme.io/careers"]},
}


def _company_body(user_id, domain: str = "acme.io", **overrides) -> dict:
    body = {
        "user_id": str(user_id),
        "company_domain": domain,
        "company": fenced(OPERATING),
        "status": "completed",
    }
    body.update(overrides)
    return body


def _research(store, user_id, domain: str = "acme.io", **fields) -> CompanyResearchRecord:
    return store.insert_company_research(
        CompanyResearchRecord(
            user_id=user_id,
            company_domain=domain,
            status=fields.pop("status", ResearchStatus.COMPLETED),
            company_status=CompanyStatus.OPERATING,
            **fields,
        )
    )


# ------------------------------------------------------------- validation


@pytest.mark.asyncio
@pytest.mark.parametrize("user_value", [None, 42, "not-a-uuid"])
async def test_company_results_require_valid_user_id(receiver, user_value):
    body = _company_body(uuid4())
    body["user_id"] = user_value
    with pytest.raises(ResearchValidationError) as excinfo:
        await receiver.receive_company_results(body)
    assert excinfo.value.code == "400_INVALID_PAYLOAD"


@pytest.mark.asyncio
async def test_company_results_reject_unknown_user(receiver):
    with pytest.raises(ResearchValidationError) as excinfo:
        await receiver.receive_company_results(_company_body(uuid4()))
    assert excinfo.value.code == "400_UNKNOWN_USER"


@pytest.mark.asyncio
@pytest.mark.parametrize("domain", ["-acme.io", "acme .io", "acme.io/", "a" * 256, ""])
async def test_company_results_reject_invalid_domains(receiver, user_id, domain):
    with pytest.raises(ResearchValidationError):
        await receiver.receive_company_results(_company_body(user_id, domain))


@pytest.mark.asyncio
async def test_company_results_require_company_text(receiver, user_id):
    body = _company_body(user_id)
    del body["company"]
    with pytest.raises(ResearchValidationError) as excinfo:
        await receiver.receive_company_results(body)
    assert "company data is required" in str(excinfo.value)


@pytest.mark.asyncio
async def test_company_results_reject_unknown_campaign(receiver, user_id):
    with pytest.raises(ResearchNotFoundError) as excinfo:
        await receiver.receive_company_results(_company_body(user_id, campaign_id=str(uuid4())))
    assert excinfo.value.code == "404_NOT_FOUND"


# ---------------------------------------------------------------- storage


@pytest.mark.asyncio
async def test_company_results_insert_parsed_row(receiver, store, user_id, campaign):
    body = _company_body(
        user_id,
        "ACME.io",
        campaign_id=str(campaign.id),
        salesforce_account_id="001ACME",
    )
    body[" company"] = body.pop("company")

    response = await receiver.receive_company_results(body)

    record = store.get_company_research(UUID(response["company_research_id"]))
    assert response["received"] is True
    assert response["id"] == response["company_research_id"]
    assert response["status"] == "completed"
    assert record.company_domain == "acme.io"
    assert record.campaign_id == campaign.id
    assert record.company_status == CompanyStatus.OPERATING
    assert record.cloud_provider == "Azure"
    assert record.cloud_confidence == 0.72
    assert record.evidence_urls == ["https://acme.io/careers"]
    assert record.raw_data == OPERATING
    assert record.awaiting_receipt is False


@pytest.mark.asyncio
async def test_company_results_update_synchronously_created_row(receiver, store, user_id, campaign, agents):
    pending = _research(store, user_id, awaiting_receipt=True, campaign_id=campaign.id, salesforce_account_id="001X")

    response = await receiver.receive_company_results(_company_body(user_id))

    assert response["company_research_id"] == str(pending.id)
    record = store.get_company_research(pending.id)
    assert record.awaiting_receipt is False
    assert record.campaign_id == campaign.id
    assert record.salesforce_account_id == "001X"
    assert store.find_awaiting_receipt(user_id, "acme.io") is None
    assert response["auto_trigger"] == "skipped"
    assert agents.payloads(PEOPLE_URL) == []


@pytest.mark.asyncio
async def test_unparseable_company_text_is_stored_as_failed(receiver, store, user_id, agents):
    response = await receiver.receive_company_results(_company_body(user_id, company="no json here"))

    record = store.get_company_research(UUID(response["company_research_id"]))
    assert response["status"] == "failed"
    assert response["auto_trigger"] == "skipped"
    assert record.status == ResearchStatus.FAILED
    assert record.error_message == PARSE_FAILURE_MESSAGE
    assert record.raw_data == {"raw_text": "no json here"}
    assert agents.payloads(PEOPLE_URL) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["rejected", "failed", "error"])
async def test_rejected_callbacks_are_failed_and_not_prospected(receiver, store, user_id, agents, status):
    response = await receiver.receive_company_results(
        _company_body(user_id, status=status, error_message="agent gave up")
    )
    record = store.get_company_research(UUID(response["company_research_id"]))
    assert record.status == ResearchStatus.FAILED
    assert record.error_message == "agent gave up"
    assert response["auto_trigger"] == "skipped"
    assert agents.payloads(PEOPLE_URL) == []


# ----------------------------------------------------------- auto trigger


@pytest.mark.asyncio
async def test_qualifying_result_triggers_prospect_research(receiver, agents, user_id):
    agents.script(PEOPLE_URL, {"received": True})

    response = await receiver.receive_company_results(_company_body(user_id))

    assert response["auto_trigger"] == "triggered"
    (payload,) = agents.payloads(PEOPLE_URL)
    assert payload["company_research_id"] == response["company_research_id"]
    assert payload["qualify"] is True
    assert payload["company_domain"] == "acme.io"
    assert payload["companyResearch"]["company_status"] == "Operating"


@pytest.mark.asyncio
async def test_auto_trigger_extends_original_payload(receiver, agents, user_id):
    agents.script(PEOPLE_URL, {"received": True})
    original = {"user_id": str(user_id), "company_domain": "acme.io", "campaign": {"campaignName": "Q3"}}

    response = await receiver.receive_company_results(_company_body(user_id, original_payload=original))

    (payload,) = agents.payloads(PEOPLE_URL)
    assert payload["campaign"] == {"campaignName": "Q3"}
    assert payload["company_research_id"] == response["company_research_id"]
    assert payload["qualify"] is True


@pytest.mark.asyncio
async def test_auto_trigger_failure_does_not_fail_the_callback(receiver, agents, user_id):
    agents.script(PEOPLE_URL, httpx.Response(503, text="busy"))

    response = await receiver.receive_company_results(_company_body(user_id))

    assert response["received"] is True
    assert response["auto_trigger"] == "failed"


@pytest.mark.asyncio
async def test_auto_trigger_without_people_webhook(receiver, store, user_id):
    store.save_integrations(UserIntegrations(user_id=user_id, company_research_webhook_url=COMPANY_URL))

    response = await receiver.receive_company_results(_company_body(user_id))

    assert response["auto_trigger"] == "not_configured"


@pytest.mark.asyncio
async def test_slow_prospect_webhook_returns_pending_and_finishes_later(store, bus, user_id):
    calls: list[dict] = []

    async def slow_agent(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.2)
        calls.append(json.loads(request.content))
        return httpx.Response(200, json={"received": True})

    webhooks = ResearchWebhookClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(slow_agent)))
    receiver = ResultReceiver(store, bus, webhooks, auto_trigger_wait_seconds=0.01, webhook_defaults={})

    response = await receiver.receive_company_results(_company_body(user_id))
    assert response["auto_trigger"] == "pending"
    assert calls == []

    await receiver.drain()
    assert len(calls) == 1


# ------------------------------------------------------------ prospects


@pytest.mark.asyncio
async def test_single_prospect_is_stored_by_domain(receiver, store, bus, user_id, make_company):
    research = _research(store, user_id, salesforce_account_id="001ACME")
    company = store.save_company(make_company("Acme", "acme.io", salesforce_account_id="001COMPANY"))
    inserted: list[ProspectResearchInserted] = []

    async def collect(event: ProspectResearchInserted) -> None:
        inserted.append(event)

    bus.subscribe(ProspectResearchInserted, collect)
    response = await receiver.receive_prospect_results(
        {
            "user_id": str(user_id),
            "company_domain": "acme.io",
            "company_id": str(company.id),
            "first_name": "Ada",
            "last_name": "Lovelace",
            "job_title": "CTO",
            "linkedin_url": "https://linkedin.com/in/ada",
            "priority": "high",
            "priority_reason": "Owns the platform budget",
            "pitch_type": "technical",
        }
    )
    await bus.drain()

    (prospect,) = store.list_prospects(research.id)
    assert response["ids"] == [str(prospect.id)]
    assert response["id"] == str(prospect.id)
    assert response["company_research_id"] == str(research.id)
    assert prospect.priority == Priority.HIGH
    assert prospect.status == ProspectStatus.PENDING
    assert prospect.salesforce_account_id == "001COMPANY"
    assert prospect.personal_id is not None
    assert [event.prospect_id for event in inserted] == [prospect.id]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "field_value",
    [
        [{"first_name": "Ada"}, {"first_name": "Grace"}],
        {"contacts": [{"first_name": "Ada"}, {"first_name": "Grace"}]},
        fenced({"contacts": [{"first_name": "Ada"}, {"first_name": "Grace"}]}),
        json.dumps([{"first_name": "Ada"}, {"first_name": "Grace"}]),
    ],
)
async def test_batched_prospects_are_stored_one_row_per_contact(receiver, store, user_id, field_value):
    research = _research(store, user_id)

    response = await receiver.receive_prospect_results(
        {"user_id": str(user_id), "company_research_id": str(research.id), "prospects": field_value}
    )

    rows = store.list_prospects(research.id)
    assert len(response["ids"]) == 2
    assert sorted(row.first_name for row in rows) == ["Ada", "Grace"]
    assert len({row.personal_id for row in rows}) == 2


@pytest.mark.asyncio
async def test_prospects_resolve_latest_research_for_domain(receiver, store, user_id):
    _research(store, user_id)
    latest = _research(store, user_id)

    response = await receiver.receive_prospect_results(
        {"user_id": str(user_id), "company_domain": "acme.io", "text": fenced({"contacts": [{"first_name": "Ada"}]})}
    )

    assert response["company_research_id"] == str(latest.id)


@pytest.mark.asyncio
async def test_prospects_for_unknown_research_are_rejected(receiver, store, user_id):
    other_user = uuid4()
    store.save_integrations(UserIntegrations(user_id=other_user))
    foreign = _research(store, other_user)

    for body in (
        {"user_id": str(user_id), "company_research_id": str(uuid4()), "first_name": "Ada"},
        {"user_id": str(user_id), "company_research_id": str(foreign.id), "first_name": "Ada"},
        {"user_id": str(user_id), "company_domain": "unknown.io", "first_name": "Ada"},
    ):
        with pytest.raises(ResearchNotFoundError):
            await receiver.receive_prospect_results(body)


@pytest.mark.asyncio
async def test_prospect_results_validate_payload(receiver, store, user_id):
    research = _research(store, user_id)

    with pytest.raises(ResearchValidationError):
        await receiver.receive_prospect_results({"user_id": str(user_id), "first_name": "Ada"})
    with pytest.raises(ResearchValidationError):
        await receiver.receive_prospect_results({"user_id": str(user_id), "company_research_id": str(research.id)})
    with pytest.raises(ResearchValidationError):
        await receiver.receive_prospect_results(
            {"user_id": str(user_id), "company_research_id": str(research.id), "prospects": "not json"}
        )
    assert store.list_prospects(research.id) == []
