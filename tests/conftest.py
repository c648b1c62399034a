from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models.research import Campaign, Company, UserIntegrations
from app.services.research import runtime as runtime_module
from app.services.research.events import NotificationBus
from app.services.research.orchestrator import ResearchOrchestrator
from app.services.research.progress import ProgressBoard
from app.services.research.receiver import ResultReceiver
from app.services.research.repositories import InMemoryResearchStore
from app.services.research.runtime import ResearchRuntime
from tests.helpers.research_agents import CLAY_URL, COMPANY_URL, PEOPLE_URL, ScriptedAgents


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def store(user_id):
    """In-memory store with one known user whose webhooks point at the scripted agents."""
    repository = InMemoryResearchStore()
    repository.save_integrations(
        UserIntegrations(
            user_id=user_id,
            company_research_webhook_url=COMPANY_URL,
            people_research_webhook_url=PEOPLE_URL,
            clay_webhook_url=CLAY_URL,
        )
    )
    return repository


@pytest.fixture
def agents():
    return ScriptedAgents()


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def campaign(store, user_id):
    return store.save_campaign(
        Campaign(
            user_id=user_id,
            name="Q3 Cloud Migration",
            product="DataPipe",
            product_category="Data integration",
            technical_focus="Kubernetes",
            target_region="North America",
            job_titles="VP Engineering\nHead of Platform",
            personas="Platform lead, Data lead",
            target_verticals="Fintech",
            primary_angle="Cut egress costs",
            pain_points="Slow pipelines\nVendor lock-in",
        )
    )


@pytest.fixture
def make_company(campaign, user_id):
    def _make(name: str, website: str | None = None, **overrides) -> Company:
        return Company(
            campaign_id=campaign.id,
            user_id=user_id,
            name=name,
            website=website,
            selected=overrides.pop("selected", True),
            **overrides,
        )

    return _make


@pytest.fixture
def orchestrator(store, agents, bus):
    research = ResearchOrchestrator(
        store, agents.webhook_client(), bus, ProgressBoard(), webhook_defaults={}
    )
    yield research
    research.close()


@pytest.fixture
def receiver(store, agents, bus):
    return ResultReceiver(
        store, bus, agents.webhook_client(), auto_trigger_wait_seconds=1.0, webhook_defaults={}
    )


@pytest.fixture
def research_runtime(store, bus, agents):
    return ResearchRuntime(
        store=store,
        bus=bus,
        webhooks=agents.webhook_client(),
        clay=agents.clay_client(),
        webhook_defaults={},
    )


@pytest.fixture
def client(research_runtime):
    """App client wired to the in-memory runtime; the context keeps the event loop alive for batch tasks."""
    app.dependency_overrides.update(
        {
            runtime_module.get_research_runtime: lambda: research_runtime,
            runtime_module.get_orchestrator: lambda: research_runtime.orchestrator,
            runtime_module.get_receiver: lambda: research_runtime.receiver,
            runtime_module.get_enrichment_service: lambda: research_runtime.enrichment,
            runtime_module.get_store: lambda: research_runtime.store,
        }
    )
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()
