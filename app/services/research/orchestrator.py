"""Drive selected companies through company research and prospect research.

Each company is researched strictly in turn. A research webhook may answer
with the final result, with an acknowledgement that a callback will follow,
or fail. Results that arrive later through the callback endpoints reach the
orchestrator as bus notifications and are merged into the same progress
entries, so whichever path delivers first wins and the other becomes a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ValidationError

from app.clients.research_webhook import (
    COMPANY_RESEARCH,
    PEOPLE_RESEARCH,
    ResearchWebhookClient,
    WebhookError,
    resolve_webhook_url,
)
from app.models.research import (
    Campaign,
    Company,
    CompanyResearchRecord,
    CompanyResearchResult,
    CompanyStatus,
    PeopleResearchResult,
    ProspectResearchRecord,
    ResearchContact,
    ResearchStatus,
    UserIntegrations,
    coerce_confidence,
)
from app.observability.metrics import metrics
from app.services.research.errors import (
    PARSE_FAILURE_MESSAGE,
    ResearchError,
    ResearchPreconditionError,
)
from app.services.research.events import (
    CompanyResearchCompleted,
    NotificationBus,
    ProspectResearchInserted,
)
from app.services.research.parsing import (
    ParseFailure,
    as_acknowledgement,
    parse_research_payload,
)
from app.services.research.payloads import (
    build_company_research_payload,
    build_prospect_research_payload,
    company_domain,
)
from app.services.research.progress import (
    CompanyProgress,
    ProgressBoard,
    ResearchStage,
    ResearchStep,
    fill_missing,
    reset,
    transition,
)
from app.services.research.repositories import ResearchStore

logger = logging.getLogger(__name__)


class BatchSummary(BaseModel):
    """Counts per step once a batch loop ends."""

    total: int
    complete: int
    people: int
    awaiting_callback: int
    errors: int
    stopped: bool = False


@dataclass
class BatchContext:
    """Campaign, user and companies of the latest batch, reused by retries and notifications."""

    user_id: UUID
    campaign: Campaign | None
    companies: dict[UUID, Company] = field(default_factory=dict)
    integrations: UserIntegrations | None = None


def dedupe_contacts(prospects: Iterable[ProspectResearchRecord]) -> list[ResearchContact]:
    """Collapse prospect rows to unique contacts by name and LinkedIn URL."""
    seen: set[tuple[str, str, str]] = set()
    contacts: list[ResearchContact] = []
    for prospect in prospects:
        contact = prospect.to_contact()
        if contact.identity in seen:
            continue
        seen.add(contact.identity)
        contacts.append(contact)
    return contacts


class ResearchOrchestrator:
    """Sequential two-stage research runner with notification reconciliation."""

    def __init__(
        self,
        store: ResearchStore,
        webhooks: ResearchWebhookClient,
        bus: NotificationBus,
        board: ProgressBoard | None = None,
        *,
        webhook_defaults: dict[str, str | None] | None = None,
    ) -> None:
        self._store = store
        self._webhooks = webhooks
        self._bus = bus
        self.board = board or ProgressBoard()
        self._webhook_defaults = webhook_defaults
        self._context: BatchContext | None = None
        self._in_flight: set[UUID] = set()
        self._batch_task: asyncio.Task[BatchSummary] | None = None
        bus.subscribe(CompanyResearchCompleted, self._on_company_research)
        bus.subscribe(ProspectResearchInserted, self._on_prospect_inserted)

    def close(self) -> None:
        self._bus.unsubscribe(CompanyResearchCompleted, self._on_company_research)
        self._bus.unsubscribe(ProspectResearchInserted, self._on_prospect_inserted)

    @property
    def context(self) -> BatchContext | None:
        return self._context

    # ------------------------------------------------------------------ batch

    async def run_batch(
        self, campaign: Campaign | None, companies: Sequence[Company], *, user_id: UUID
    ) -> BatchSummary | None:
        """Research every selected company in order; None when a batch is already running."""
        selected = self._claim_batch(campaign, companies, user_id=user_id)
        if selected is None:
            return None
        return await self._execute_batch(selected)

    def start_batch(
        self, campaign: Campaign | None, companies: Sequence[Company], *, user_id: UUID
    ) -> asyncio.Task[BatchSummary] | None:
        """Claim the board now and run the batch on a background task."""
        selected = self._claim_batch(campaign, companies, user_id=user_id)
        if selected is None:
            return None
        task = asyncio.get_running_loop().create_task(self._execute_batch(selected))
        self._batch_task = task
        return task

    def stop(self) -> bool:
        """Let the in-flight company finish but start no further companies."""
        stopped = self.board.stop()
        if stopped:
            logger.info("research.batch.stop_requested")
        return stopped

    def _claim_batch(
        self, campaign: Campaign | None, companies: Sequence[Company], *, user_id: UUID
    ) -> list[Company] | None:
        selected = [company for company in companies if company.selected]
        if not self.board.start_batch(selected):
            metrics.increment("batch.rejected")
            logger.warning("research.batch.rejected", extra={"user_id": str(user_id)})
            return None
        self._context = BatchContext(
            user_id=user_id,
            campaign=campaign,
            companies={company.id: company for company in selected},
            integrations=self._store.get_integrations(user_id),
        )
        metrics.increment("batch.started")
        logger.info(
            "research.batch.started",
            extra={
                "user_id": str(user_id),
                "campaign_id": str(campaign.id) if campaign else None,
                "companies": len(selected),
            },
        )
        return selected

    async def _execute_batch(self, selected: list[Company]) -> BatchSummary:
        stopped = False
        try:
            for index, company in enumerate(selected):
                if not self.board.is_running:
                    stopped = True
                    logger.info(
                        "research.batch.stopped",
                        extra={"remaining": len(selected) - index},
                    )
                    break
                self.board.set_current(index, company.name)
                metrics.gauge("batch.remaining", len(selected) - index)
                self._in_flight.add(company.id)
                try:
                    with metrics.timer("company.duration_ms"):
                        await self._run_company_stage(company)
                except Exception as exc:
                    logger.exception("research.company.unexpected_error", extra={"company_id": str(company.id)})
                    self._fail(company.id, f"Unexpected error: {exc}", stage=ResearchStage.COMPANY)
                finally:
                    self._in_flight.discard(company.id)
        finally:
            self.board.stop()
            self.board.set_current(None, None)
        summary = self._summarize(selected, stopped=stopped)
        logger.info("research.batch.finished", extra=summary.model_dump())
        return summary

    def _summarize(self, companies: Sequence[Company], *, stopped: bool) -> BatchSummary:
        entries = [self.board.get(company.id) for company in companies]
        steps = [entry.step for entry in entries if entry is not None]
        return BatchSummary(
            total=len(companies),
            complete=steps.count(ResearchStep.COMPLETE),
            people=steps.count(ResearchStep.PEOPLE),
            awaiting_callback=steps.count(ResearchStep.AWAITING_CALLBACK),
            errors=steps.count(ResearchStep.ERROR),
            stopped=stopped,
        )

    # ---------------------------------------------------------------- retries

    async def retry_stage(
        self,
        company_id: UUID,
        stage: ResearchStage | str,
        *,
        campaign: Campaign | None = None,
        company: Company | None = None,
        user_id: UUID | None = None,
    ) -> CompanyProgress:
        """Re-run one stage for one company using the latest batch context."""
        stage = ResearchStage(stage)
        if company_id in self._in_flight:
            raise ResearchPreconditionError("Research is already in progress for this company.")
        company = self._resolve_company(company_id, campaign=campaign, company=company, user_id=user_id)
        entry = self.board.track(company)

        if stage == ResearchStage.PEOPLE and entry.company_research_id is None:
            raise ResearchPreconditionError("Missing company research ID. Retry company research first.")

        logger.info(
            "research.retry.started",
            extra={"company_id": str(company_id), "stage": stage.value},
        )
        self._in_flight.add(company_id)
        try:
            if stage == ResearchStage.COMPANY:
                self.board.apply(company_id, lambda current: reset(current))
                await self._run_company_stage(company)
            else:
                self.board.apply(company_id, _rewind_to_people)
                await self._run_people_stage(company, force=True)
        finally:
            self._in_flight.discard(company_id)
        return self.board.get(company_id) or entry

    async def research_acquirer(self, company_id: UUID) -> CompanyProgress:
        """Switch an acquired company's entry to researching its acquirer."""
        if company_id in self._in_flight:
            raise ResearchPreconditionError("Research is already in progress for this company.")
        entry = self.board.get(company_id)
        data = entry.company_data if entry else None
        if entry is None or data is None or data.company_status != CompanyStatus.ACQUIRED or not data.acquiredBy:
            raise ResearchPreconditionError("Company has no acquirer to research.")
        company = self._resolve_company(company_id)
        acquirer = company.model_copy(
            update={"name": data.acquiredBy, "website": None, "linkedin_url": None}
        )
        self._require_context().companies[company_id] = acquirer
        domain = company_domain(acquirer)
        self.board.apply(
            company_id,
            lambda current: reset(current, company_name=acquirer.name).model_copy(
                update={"company_domain": domain}
            ),
        )
        logger.info(
            "research.acquirer.switched",
            extra={"company_id": str(company_id), "acquirer": acquirer.name},
        )
        self._in_flight.add(company_id)
        try:
            await self._run_company_stage(acquirer)
        finally:
            self._in_flight.discard(company_id)
        return self.board.get(company_id) or entry

    def hydrate_existing(self) -> int:
        """Load stored prospects into entries that know their research id but show no contacts."""
        hydrated = 0
        for entry in self.board.entries():
            if entry.contacts or entry.company_research_id is None:
                continue
            contacts = dedupe_contacts(self._store.list_prospects(entry.company_research_id))
            if not contacts:
                continue
            if entry.step in (ResearchStep.PEOPLE, ResearchStep.AWAITING_CALLBACK):
                self.board.apply(
                    entry.company_id,
                    lambda current, found=contacts: transition(current, ResearchStep.COMPLETE, contacts=found),
                )
            else:
                self.board.apply(
                    entry.company_id, lambda current, found=contacts: fill_missing(current, contacts=found)
                )
            hydrated += 1
        if hydrated:
            logger.info("research.hydrate.loaded", extra={"companies": hydrated})
        return hydrated

    def _resolve_company(
        self,
        company_id: UUID,
        *,
        campaign: Campaign | None = None,
        company: Company | None = None,
        user_id: UUID | None = None,
    ) -> Company:
        if self._context is None:
            if user_id is None:
                raise ResearchPreconditionError("No research batch has been started.")
            self._context = BatchContext(
                user_id=user_id,
                campaign=campaign,
                integrations=self._store.get_integrations(user_id),
            )
        elif campaign is not None:
            self._context.campaign = campaign
        resolved = company or self._context.companies.get(company_id) or self._store.get_company(company_id)
        if resolved is None:
            raise ResearchPreconditionError(f"Company {company_id} is not part of the current research.")
        self._context.companies[company_id] = resolved
        return resolved

    # ----------------------------------------------------------------- stages

    async def _run_company_stage(self, company: Company) -> None:
        ctx = self._require_context()
        payload = build_company_research_payload(ctx.campaign, company, ctx.user_id)
        try:
            url = resolve_webhook_url(COMPANY_RESEARCH, ctx.integrations, self._webhook_defaults)
            raw = await self._webhooks.invoke(url, payload, stage=ResearchStage.COMPANY.value)
        except WebhookError as exc:
            self._fail(company.id, str(exc), stage=ResearchStage.COMPANY, code=exc.code)
            return

        parsed = parse_research_payload(raw)
        if isinstance(parsed, ParseFailure):
            self._fail(
                company.id, PARSE_FAILURE_MESSAGE, stage=ResearchStage.COMPANY, raw_response=parsed.raw
            )
            return

        acknowledgement = as_acknowledgement(parsed.data)
        if acknowledgement is not None:
            self.board.apply(
                company.id,
                lambda current: transition(
                    current,
                    ResearchStep.AWAITING_CALLBACK,
                    awaiting_stage=ResearchStage.COMPANY,
                    company_research_id=acknowledgement.company_research_id or current.company_research_id,
                ),
            )
            logger.info(
                "research.stage.awaiting_callback",
                extra={"company_id": str(company.id), "stage": ResearchStage.COMPANY.value},
            )
            return

        try:
            result = CompanyResearchResult.model_validate(parsed.data)
        except ValidationError:
            self._fail(
                company.id,
                PARSE_FAILURE_MESSAGE,
                stage=ResearchStage.COMPANY,
                raw_response=_raw_text(raw),
            )
            return

        if (result.status or "").lower() == "error" and result.company_status is None:
            self._fail(company.id, "Research failed", stage=ResearchStage.COMPANY)
            return

        current = self.board.get(company.id)
        research_id = current.company_research_id if current else None
        if research_id is None:
            try:
                research_id = self._persist_direct_result(company, result, parsed.data).id
            except ResearchError as exc:
                self._fail(company.id, str(exc), stage=ResearchStage.COMPANY, code=exc.code)
                return

        eligible = result.qualifies_for_prospecting
        self.board.apply(
            company.id,
            lambda current: transition(
                current,
                ResearchStep.PEOPLE,
                company_data=result,
                company_research_id=research_id,
                prospecting_eligible=eligible,
            ),
        )
        logger.info(
            "research.stage.company_completed",
            extra={
                "company_id": str(company.id),
                "company_status": result.company_status.value if result.company_status else None,
                "eligible": eligible,
            },
        )
        if eligible:
            await self._run_people_stage(company)

    async def _run_people_stage(
        self, company: Company, *, force: bool = False, from_notification: bool = False
    ) -> None:
        if force:
            self.board.apply(
                company.id, lambda current: current.model_copy(update={"prospecting_triggered": True})
            )
        elif not self._claim_prospecting(company.id):
            logger.info("research.prospecting.skipped", extra={"company_id": str(company.id)})
            return

        ctx = self._require_context()
        entry = self.board.get(company.id)
        if entry is None:
            return
        payload = build_prospect_research_payload(
            ctx.campaign, company, entry.company_data, ctx.user_id, entry.company_research_id
        )
        metrics.increment("prospecting.triggered", tags={"source": "notification" if from_notification else "batch"})
        logger.info(
            "research.prospecting.triggered",
            extra={
                "company_id": str(company.id),
                "company_research_id": str(entry.company_research_id) if entry.company_research_id else None,
                "source": "notification" if from_notification else "batch",
            },
        )
        try:
            url = resolve_webhook_url(PEOPLE_RESEARCH, ctx.integrations, self._webhook_defaults)
            raw = await self._webhooks.invoke(url, payload, stage=ResearchStage.PEOPLE.value)
        except WebhookError as exc:
            self._people_failed(company, str(exc), from_notification=from_notification, code=exc.code)
            return

        if _is_empty_reply(raw):
            self._await_people_callback(company)
            return

        parsed = parse_research_payload(raw)
        result = None if isinstance(parsed, ParseFailure) else _people_result(parsed.data, company.id)
        if result is None:
            self._people_failed(
                company, PARSE_FAILURE_MESSAGE, from_notification=from_notification, raw_response=_raw_text(raw)
            )
            return

        contacts = result.contacts
        if contacts:
            self.board.apply(
                company.id, lambda current: transition(current, ResearchStep.COMPLETE, contacts=contacts)
            )
            logger.info(
                "research.stage.people_completed",
                extra={"company_id": str(company.id), "contacts": len(contacts)},
            )
            return

        if (result.status or "").lower() == "error":
            self._people_failed(company, "Prospect research failed", from_notification=from_notification)
            return

        self._await_people_callback(company)

    def _await_people_callback(self, company: Company) -> None:
        self.board.apply(
            company.id,
            lambda current: transition(
                current, ResearchStep.AWAITING_CALLBACK, awaiting_stage=ResearchStage.PEOPLE
            ),
        )
        logger.info(
            "research.stage.awaiting_callback",
            extra={"company_id": str(company.id), "stage": ResearchStage.PEOPLE.value},
        )

    def _people_failed(
        self,
        company: Company,
        message: str,
        *,
        from_notification: bool,
        code: str | None = None,
        raw_response: str | None = None,
    ) -> None:
        # A failed fallback leaves the entry in people for a manual retry.
        if from_notification:
            logger.warning(
                "research.prospecting.fallback_failed",
                extra={"company_id": str(company.id), "code": code, "error": message},
            )
            return
        self._fail(company.id, message, stage=ResearchStage.PEOPLE, code=code, raw_response=raw_response)

    def _claim_prospecting(self, company_id: UUID) -> bool:
        claimed = False

        def _claim(entry: CompanyProgress) -> CompanyProgress:
            nonlocal claimed
            if entry.prospecting_triggered or entry.step == ResearchStep.COMPLETE:
                return entry
            claimed = True
            return entry.model_copy(update={"prospecting_triggered": True})

        self.board.apply(company_id, _claim)
        return claimed

    def _persist_direct_result(
        self, company: Company, result: CompanyResearchResult, raw_data: dict[str, Any]
    ) -> CompanyResearchRecord:
        ctx = self._require_context()
        cloud = result.cloud_preference
        record = CompanyResearchRecord(
            user_id=ctx.user_id,
            company_domain=company_domain(company),
            campaign_id=ctx.campaign.id if ctx.campaign else None,
            salesforce_account_id=company.salesforce_account_id,
            company_name=result.company or company.name,
            status=ResearchStatus.COMPLETED,
            company_status=result.company_status,
            acquired_by=result.acquiredBy,
            cloud_provider=cloud.provider if cloud else None,
            cloud_confidence=coerce_confidence(cloud.confidence) if cloud else None,
            evidence_urls=list(cloud.evidence_urls) if cloud else [],
            raw_data=raw_data,
            awaiting_receipt=True,
        )
        return self._store.insert_company_research(record)

    def _fail(
        self,
        company_id: UUID,
        message: str,
        *,
        stage: ResearchStage,
        code: str | None = None,
        raw_response: str | None = None,
    ) -> None:
        self.board.apply(
            company_id,
            lambda current: transition(current, ResearchStep.ERROR, error=message, raw_response=raw_response),
        )
        metrics.increment("stage.errors", tags={"stage": stage.value})
        logger.warning(
            "research.stage.failed",
            extra={"company_id": str(company_id), "stage": stage.value, "code": code, "error": message},
        )

    def _require_context(self) -> BatchContext:
        if self._context is None:
            raise ResearchPreconditionError("No research batch has been started.")
        return self._context

    # ---------------------------------------------------------- notifications

    async def _on_company_research(self, event: CompanyResearchCompleted) -> None:
        ctx = self._context
        if ctx is None or event.user_id != ctx.user_id:
            return
        entry = self.board.find_by_domain(event.company_domain)
        if entry is None:
            logger.debug("research.notification.unmatched", extra={"company_domain": event.company_domain})
            return
        if event.status != ResearchStatus.COMPLETED.value:
            self._on_failed_company_research(entry, event)
            return

        result = _result_from_event(event)
        eligible = result.qualifies_for_prospecting if result else False
        self.board.apply(
            entry.company_id,
            lambda current: transition(
                current,
                ResearchStep.PEOPLE,
                company_data=result,
                company_research_id=event.company_research_id,
                prospecting_eligible=eligible,
            ),
        )
        logger.info(
            "research.notification.company_research",
            extra={
                "company_id": str(entry.company_id),
                "company_research_id": str(event.company_research_id),
                "eligible": eligible,
            },
        )
        company = ctx.companies.get(entry.company_id)
        if eligible and company is not None:
            await self._run_people_stage(company, from_notification=True)

    def _on_failed_company_research(self, entry: CompanyProgress, event: CompanyResearchCompleted) -> None:
        # Only an entry still waiting on the company callback is affected.
        if entry.step != ResearchStep.AWAITING_CALLBACK or entry.awaiting_stage != ResearchStage.COMPANY:
            return
        if event.status != ResearchStatus.FAILED.value:
            return
        raw_text = event.raw_data.get("raw_text") if isinstance(event.raw_data, dict) else None
        self.board.apply(
            entry.company_id,
            lambda current: fill_missing(
                transition(
                    current,
                    ResearchStep.ERROR,
                    error=event.error_message or PARSE_FAILURE_MESSAGE,
                    raw_response=_raw_text(raw_text),
                ),
                company_research_id=event.company_research_id,
            ),
        )
        metrics.increment("stage.errors", tags={"stage": ResearchStage.COMPANY.value})
        logger.warning(
            "research.notification.company_failed",
            extra={
                "company_id": str(entry.company_id),
                "company_research_id": str(event.company_research_id),
                "error": event.error_message,
            },
        )

    async def _on_prospect_inserted(self, event: ProspectResearchInserted) -> None:
        ctx = self._context
        if ctx is None or event.user_id != ctx.user_id:
            return
        record = self._store.get_company_research(event.company_research_id)
        if record is None:
            return
        entry = self.board.find_by_research_id(record.id) or self.board.find_by_domain(record.company_domain)
        if entry is None:
            return
        contacts = dedupe_contacts(self._store.list_prospects(record.id))
        if not contacts:
            return
        self.board.apply(
            entry.company_id,
            lambda current: fill_missing(
                transition(current, ResearchStep.COMPLETE, contacts=contacts),
                company_research_id=record.id,
            ),
        )
        logger.info(
            "research.notification.prospects",
            extra={"company_id": str(entry.company_id), "contacts": len(contacts)},
        )


def _rewind_to_people(entry: CompanyProgress) -> CompanyProgress:
    return entry.model_copy(
        update={
            "step": ResearchStep.PEOPLE,
            "awaiting_stage": None,
            "error": None,
            "raw_response": None,
        }
    )


def _people_result(data: dict[str, Any], company_id: UUID) -> PeopleResearchResult | None:
    """Validate stage-2 contacts one by one; None when every offered contact is malformed."""
    raw_contacts = data.get("contacts")
    offered = [item for item in raw_contacts if isinstance(item, dict)] if isinstance(raw_contacts, list) else []
    contacts: list[ResearchContact] = []
    seen: set[tuple[str, str, str]] = set()
    for item in offered:
        try:
            contact = ResearchContact.model_validate(item)
        except ValidationError as exc:
            logger.warning(
                "research.contact.invalid",
                extra={"company_id": str(company_id), "errors": exc.error_count()},
            )
            continue
        if contact.identity in seen:
            continue
        seen.add(contact.identity)
        contacts.append(contact)
    if offered and not contacts:
        return None
    status = data.get("status")
    return PeopleResearchResult(status=str(status) if status is not None else None, contacts=contacts)


def _is_empty_reply(raw: Any) -> bool:
    if isinstance(raw, str):
        return not raw.strip()
    return raw is None or raw == {} or raw == []


def _result_from_event(event: CompanyResearchCompleted) -> CompanyResearchResult | None:
    raw = event.raw_data
    if raw is not None and not isinstance(raw, dict):
        parsed = parse_research_payload(raw)
        raw = parsed.data if not isinstance(parsed, ParseFailure) else None
    if isinstance(raw, dict):
        try:
            result = CompanyResearchResult.model_validate(raw)
        except ValidationError:
            result = None
        if result is not None:
            if result.company_status is None and event.company_status:
                return result.model_copy(update={"company_status": CompanyStatus(event.company_status)})
            return result
    if event.company_status:
        return CompanyResearchResult(company_status=CompanyStatus(event.company_status))
    return None


def _raw_text(raw: Any) -> str | None:
    if raw is None:
        return None
    return raw if isinstance(raw, str) else repr(raw)
