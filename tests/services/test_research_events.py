from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

import pytest

from app.services.research.events import (
    CompanyResearchCompleted,
    NotificationBus,
    ProspectResearchInserted,
)


def _company_event() -> CompanyResearchCompleted:
    return CompanyResearchCompleted(
        user_id=uuid4(),
        company_research_id=uuid4(),
        company_domain="acme.io",
        status="completed",
        company_status="Operating",
    )


def test_publish_without_subscribers_is_a_noop():
    assert NotificationBus().publish(_company_event()) == 0


@pytest.mark.asyncio
async def test_events_reach_handlers_of_their_type_only():
    bus = NotificationBus()
    company_events: list[CompanyResearchCompleted] = []
    prospect_events: list[ProspectResearchInserted] = []

    async def on_company(event: CompanyResearchCompleted) -> None:
        company_events.append(event)

    async def on_prospect(event: ProspectResearchInserted) -> None:
        prospect_events.append(event)

    bus.subscribe(CompanyResearchCompleted, on_company)
    bus.subscribe(CompanyResearchCompleted, on_company)
    bus.subscribe(ProspectResearchInserted, on_prospect)

    event = _company_event()
    assert bus.publish(event) == 1
    await bus.drain()

    assert company_events == [event]
    assert prospect_events == []
    assert bus.pending == 0


@pytest.mark.asyncio
async def test_publish_does_not_wait_for_handlers():
    bus = NotificationBus()
    release = asyncio.Event()
    seen: list[str] = []

    async def slow(event: CompanyResearchCompleted) -> None:
        await release.wait()
        seen.append(event.company_domain)

    bus.subscribe(CompanyResearchCompleted, slow)
    bus.publish(_company_event())
    assert seen == []
    assert bus.pending == 1

    release.set()
    await bus.drain()
    assert seen == ["acme.io"]


@pytest.mark.asyncio
async def test_failing_handler_is_logged_and_others_still_run(caplog):
    bus = NotificationBus()
    delivered: list[CompanyResearchCompleted] = []

    async def broken(event: CompanyResearchCompleted) -> None:
        raise RuntimeError("handler exploded")

    async def healthy(event: CompanyResearchCompleted) -> None:
        delivered.append(event)

    bus.subscribe(CompanyResearchCompleted, broken)
    bus.subscribe(CompanyResearchCompleted, healthy)

    with caplog.at_level(logging.ERROR, logger="app.services.research.events"):
        bus.publish(_company_event())
        await bus.drain()

    assert len(delivered) == 1
    assert any(record.getMessage() == "research.events.handler_failed" for record in caplog.records)


@pytest.mark.asyncio
async def test_unsubscribed_handlers_stop_receiving():
    bus = NotificationBus()
    calls: list[object] = []

    async def handler(event: CompanyResearchCompleted) -> None:
        calls.append(event)

    bus.subscribe(CompanyResearchCompleted, handler)
    bus.unsubscribe(CompanyResearchCompleted, handler)

    assert bus.publish(_company_event()) == 0
    await bus.drain()
    assert calls == []
