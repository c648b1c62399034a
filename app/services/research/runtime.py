"""Process-wide wiring of the research store, bus, clients and services."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.clients.clay import ClayClient
from app.clients.research_webhook import ResearchWebhookClient
from app.services.research.enrichment import EnrichmentService
from app.services.research.events import NotificationBus
from app.services.research.orchestrator import ResearchOrchestrator
from app.services.research.progress import ProgressBoard
from app.services.research.receiver import ResultReceiver
from app.services.research.repositories import InMemoryResearchStore, ResearchStore, build_research_store

logger = logging.getLogger(__name__)


@dataclass
class ResearchRuntime:
    store: ResearchStore
    bus: NotificationBus
    webhooks: ResearchWebhookClient
    clay: ClayClient
    board: ProgressBoard = field(default_factory=ProgressBoard)
    webhook_defaults: dict[str, str | None] | None = None

    def __post_init__(self) -> None:
        self.orchestrator = ResearchOrchestrator(
            self.store, self.webhooks, self.bus, self.board, webhook_defaults=self.webhook_defaults
        )
        self.receiver = ResultReceiver(
            self.store, self.bus, self.webhooks, webhook_defaults=self.webhook_defaults
        )
        self.enrichment = EnrichmentService(self.store, self.clay, webhook_defaults=self.webhook_defaults)

    @property
    def backend(self) -> str:
        return "memory" if isinstance(self.store, InMemoryResearchStore) else "database"

    async def aclose(self) -> None:
        self.orchestrator.close()
        await self.webhooks.aclose()
        self.clay.close()
        dispose = getattr(self.store, "dispose", None)
        if callable(dispose):
            dispose()


def build_research_runtime(database_url: str | None = None) -> ResearchRuntime:
    runtime = ResearchRuntime(
        store=build_research_store(database_url),
        bus=NotificationBus(),
        webhooks=ResearchWebhookClient(),
        clay=ClayClient(),
    )
    logger.info("research.runtime.initialized", extra={"backend": runtime.backend})
    return runtime


_RUNTIME_INSTANCE: ResearchRuntime | None = None


def get_research_runtime() -> ResearchRuntime:
    """Singleton accessor used by API routes."""
    global _RUNTIME_INSTANCE  # noqa: PLW0603
    if _RUNTIME_INSTANCE is None:
        _RUNTIME_INSTANCE = build_research_runtime()
    return _RUNTIME_INSTANCE


async def shutdown_research_runtime() -> None:
    global _RUNTIME_INSTANCE  # noqa: PLW0603
    if _RUNTIME_INSTANCE is not None:
        await _RUNTIME_INSTANCE.aclose()
    _RUNTIME_INSTANCE = None


def get_orchestrator() -> ResearchOrchestrator:
    return get_research_runtime().orchestrator


def get_receiver() -> ResultReceiver:
    return get_research_runtime().receiver


def get_enrichment_service() -> EnrichmentService:
    return get_research_runtime().enrichment


def get_store() -> ResearchStore:
    return get_research_runtime().store
