"""Accept asynchronous research results posted back by the research agents."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any
from uuid import UUID, uuid4

from pydantic import ValidationError

from app.clients.research_webhook import (
    PEOPLE_RESEARCH,
    ResearchWebhookClient,
    WebhookError,
    WebhookNotConfiguredError,
    resolve_webhook_url,
)
from app.config import settings
from app.models.research import (
    Company,
    CompanyResearchRecord,
    CompanyResearchResult,
    ProspectResearchRecord,
    ProspectStatus,
    ResearchStatus,
    coerce_confidence,
    coerce_priority,
)
from app.observability.metrics import metrics
from app.services.research.errors import (
    PARSE_FAILURE_MESSAGE,
    ResearchNotFoundError,
    ResearchParseError,
    ResearchValidationError,
)
from app.services.research.events import (
    CompanyResearchCompleted,
    NotificationBus,
    ProspectResearchInserted,
)
from app.services.research.parsing import decode_research_text
from app.services.research.payloads import build_prospect_research_payload
from app.services.research.repositories import ResearchStore

logger = logging.getLogger(__name__)

DOMAIN_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9.-]*[a-zA-Z0-9]$")
MAX_DOMAIN_LENGTH = 255

AUTO_TRIGGER_TRIGGERED = "triggered"
AUTO_TRIGGER_PENDING = "pending"
AUTO_TRIGGER_FAILED = "failed"
AUTO_TRIGGER_SKIPPED = "skipped"
AUTO_TRIGGER_NOT_CONFIGURED = "not_configured"

_CONTACT_FIELDS = (
    "first_name",
    "last_name",
    "job_title",
    "title",
    "linkedin_url",
    "linkedin",
    "priority",
    "priority_reason",
    "pitch_type",
)


class ResultReceiver:
    """Validate, store and announce research callbacks."""

    def __init__(
        self,
        store: ResearchStore,
        bus: NotificationBus,
        webhooks: ResearchWebhookClient,
        *,
        auto_trigger_wait_seconds: float | None = None,
        webhook_defaults: dict[str, str | None] | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._webhooks = webhooks
        self._wait_seconds = (
            settings.auto_trigger_wait_seconds
            if auto_trigger_wait_seconds is None
            else auto_trigger_wait_seconds
        )
        self._webhook_defaults = webhook_defaults
        self._background: set[asyncio.Task[str]] = set()

    async def drain(self) -> None:
        """Wait for auto-trigger calls that outlived their response."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ---------------------------------------------------------- stage 1

    async def receive_company_results(self, body: dict[str, Any]) -> dict[str, Any]:
        user_id = self._require_known_user(body.get("user_id"))
        domain = _require_domain(body.get("company_domain"))
        raw = _first_present(body, "company", " company", "text")
        if raw is None:
            raise ResearchValidationError("company data is required (expected 'company' field).")
        campaign_id = _optional_uuid(body.get("campaign_id"), "campaign_id")
        if campaign_id is not None and self._store.get_campaign(campaign_id) is None:
            raise ResearchNotFoundError(f"Campaign {campaign_id} not found.")

        data, result, parse_error = _parse_company_text(raw)
        rejected = str(body.get("status") or "").strip().lower() in ("rejected", "failed", "error")
        status = ResearchStatus.FAILED if rejected or result is None else ResearchStatus.COMPLETED
        cloud = result.cloud_preference if result else None
        fields = {
            "campaign_id": campaign_id,
            "salesforce_account_id": body.get("salesforce_account_id") or None,
            "company_name": result.company if result else None,
            "status": status,
            "company_status": result.company_status if result else None,
            "acquired_by": result.acquiredBy if result else None,
            "cloud_provider": cloud.provider if cloud else None,
            "cloud_confidence": coerce_confidence(cloud.confidence) if cloud else None,
            "evidence_urls": list(cloud.evidence_urls) if cloud else [],
            "raw_data": data,
            "error_message": body.get("error_message") or parse_error,
            "awaiting_receipt": False,
        }

        existing = self._store.find_awaiting_receipt(user_id, domain)
        if existing is not None:
            if fields["campaign_id"] is None:
                fields["campaign_id"] = existing.campaign_id
            if fields["salesforce_account_id"] is None:
                fields["salesforce_account_id"] = existing.salesforce_account_id
            record = self._store.update_company_research(existing.model_copy(update=fields))
            operation = "update"
        else:
            record = self._store.insert_company_research(
                CompanyResearchRecord(user_id=user_id, company_domain=domain, **fields)
            )
            operation = "insert"

        metrics.increment("callbacks.company_results", tags={"operation": operation, "status": status.value})
        logger.info(
            "research.callback.company_results",
            extra={
                "company_research_id": str(record.id),
                "company_domain": domain,
                "operation": operation,
                "status": status.value,
                "company_status": record.company_status.value if record.company_status else None,
            },
        )
        self._bus.publish(
            CompanyResearchCompleted(
                user_id=user_id,
                company_research_id=record.id,
                company_domain=domain,
                status=record.status.value,
                company_status=record.company_status.value if record.company_status else None,
                raw_data=record.raw_data,
                operation=operation,
                error_message=record.error_message,
            )
        )

        # A confirmed awaiting_receipt row came from a synchronous reply whose
        # caller already started prospect research.
        auto_trigger = AUTO_TRIGGER_SKIPPED
        if (
            existing is None
            and status == ResearchStatus.COMPLETED
            and result is not None
            and result.qualifies_for_prospecting
        ):
            auto_trigger = await self.auto_trigger_prospecting(
                record, result, original_payload=body.get("original_payload")
            )

        return {
            "received": True,
            "id": str(record.id),
            "company_research_id": str(record.id),
            "status": record.status.value,
            "auto_trigger": auto_trigger,
        }

    async def auto_trigger_prospecting(
        self,
        record: CompanyResearchRecord,
        result: CompanyResearchResult,
        *,
        original_payload: Any = None,
    ) -> str:
        """Start prospect research server-side and wait a bounded time for the call.

        Whichever settles first, the call or the timer, decides the returned
        outcome. A call still running when the timer fires keeps going in the
        background and logs its own outcome. This may silently fail: callers
        never see the eventual error, only the log does.
        """
        integrations = self._store.get_integrations(record.user_id)
        try:
            url = resolve_webhook_url(PEOPLE_RESEARCH, integrations, self._webhook_defaults)
        except WebhookNotConfiguredError:
            logger.warning(
                "research.auto_trigger.not_configured",
                extra={"company_research_id": str(record.id)},
            )
            return AUTO_TRIGGER_NOT_CONFIGURED

        payload = self._auto_trigger_payload(record, result, original_payload)
        task = asyncio.get_running_loop().create_task(self._invoke_prospecting(url, payload, record.id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        done, _ = await asyncio.wait({task}, timeout=max(self._wait_seconds, 0.0))
        if task in done:
            return task.result()
        logger.info(
            "research.auto_trigger.pending",
            extra={"company_research_id": str(record.id), "wait_seconds": self._wait_seconds},
        )
        return AUTO_TRIGGER_PENDING

    async def _invoke_prospecting(self, url: str, payload: dict[str, Any], research_id: UUID) -> str:
        try:
            reply = await self._webhooks.invoke(url, payload, stage="people")
        except WebhookError as exc:
            metrics.increment("auto_trigger.failed")
            logger.warning(
                "research.auto_trigger.failed",
                extra={"company_research_id": str(research_id), "code": exc.code, "error": str(exc)},
            )
            return AUTO_TRIGGER_FAILED
        metrics.increment("auto_trigger.triggered")
        logger.info(
            "research.auto_trigger.completed",
            extra={"company_research_id": str(research_id), "reply_type": type(reply).__name__},
        )
        return AUTO_TRIGGER_TRIGGERED

    def _auto_trigger_payload(
        self, record: CompanyResearchRecord, result: CompanyResearchResult, original_payload: Any
    ) -> dict[str, Any]:
        research = result.model_dump(mode="json", exclude_none=True)
        if isinstance(original_payload, dict):
            return {
                **original_payload,
                "company_research_id": str(record.id),
                "companyResearch": research,
                "qualify": True,
            }
        campaign = self._store.get_campaign(record.campaign_id) if record.campaign_id else None
        company = Company(
            name=record.company_name or record.company_domain,
            website=record.company_domain,
            campaign_id=record.campaign_id,
            salesforce_account_id=record.salesforce_account_id,
        )
        return build_prospect_research_payload(campaign, company, research, record.user_id, record.id)

    # ---------------------------------------------------------- stage 2

    async def receive_prospect_results(self, body: dict[str, Any]) -> dict[str, Any]:
        user_id = self._require_known_user(body.get("user_id"))
        research = self._resolve_research(user_id, body)
        contacts = _extract_contacts(body)
        if not contacts:
            raise ResearchValidationError(
                "prospect data is required (expected 'prospect', 'prospects', 'text' or contact fields)."
            )
        company_id = _optional_uuid(body.get("company_id"), "company_id")
        campaign_id = _optional_uuid(body.get("campaign_id"), "campaign_id") or research.campaign_id
        salesforce_account_id = body.get("salesforce_account_id") or None
        if salesforce_account_id is None and company_id is not None:
            company = self._store.get_company(company_id)
            salesforce_account_id = company.salesforce_account_id if company else None
        salesforce_account_id = salesforce_account_id or research.salesforce_account_id
        rejected = str(body.get("status") or "").strip().lower() == "rejected"

        inserted: list[ProspectResearchRecord] = []
        for contact in contacts:
            record = self._store.insert_prospect(
                ProspectResearchRecord(
                    user_id=user_id,
                    company_research_id=research.id,
                    campaign_id=campaign_id,
                    company_id=company_id,
                    salesforce_account_id=salesforce_account_id,
                    salesforce_campaign_id=body.get("salesforce_campaign_id") or None,
                    first_name=_text(contact.get("first_name")),
                    last_name=_text(contact.get("last_name")),
                    job_title=_text(contact.get("job_title") or contact.get("title")),
                    linkedin_url=_text(contact.get("linkedin_url") or contact.get("linkedin")),
                    priority=coerce_priority(contact.get("priority")),
                    priority_reason=_text(contact.get("priority_reason")),
                    pitch_type=_text(contact.get("pitch_type")),
                    status=ProspectStatus.PENDING,
                    personal_id=uuid4(),
                    raw_data=contact,
                )
            )
            inserted.append(record)

        for record in inserted:
            self._bus.publish(
                ProspectResearchInserted(
                    user_id=user_id,
                    prospect_id=record.id,
                    company_research_id=research.id,
                )
            )
        metrics.increment("callbacks.prospect_results", value=len(inserted))
        logger.info(
            "research.callback.prospect_results",
            extra={
                "company_research_id": str(research.id),
                "company_domain": research.company_domain,
                "prospects": len(inserted),
            },
        )
        ids = [str(record.id) for record in inserted]
        return {
            "received": True,
            "id": ids[0] if ids else None,
            "ids": ids,
            "company_research_id": str(research.id),
            "status": "rejected" if rejected else "completed",
        }

    def _resolve_research(self, user_id: UUID, body: dict[str, Any]) -> CompanyResearchRecord:
        research_id = _optional_uuid(body.get("company_research_id"), "company_research_id")
        if research_id is not None:
            record = self._store.get_company_research(research_id)
            if record is None or record.user_id != user_id:
                raise ResearchNotFoundError(f"Company research {research_id} not found.")
            return record
        if not body.get("company_domain"):
            raise ResearchValidationError("company_domain or company_research_id is required.")
        domain = _require_domain(body.get("company_domain"))
        record = self._store.latest_company_research(user_id, domain)
        if record is None:
            raise ResearchNotFoundError(f"No company research found for {domain}.")
        return record

    def _require_known_user(self, value: Any) -> UUID:
        if not value or not isinstance(value, str):
            raise ResearchValidationError("user_id is required and must be a string.")
        try:
            user_id = UUID(value)
        except ValueError as exc:
            raise ResearchValidationError("user_id must be a valid UUID.") from exc
        if not self._store.user_exists(user_id):
            raise ResearchValidationError("user_id does not belong to a known user.", code="400_UNKNOWN_USER")
        return user_id


def _require_domain(value: Any) -> str:
    if not value or not isinstance(value, str):
        raise ResearchValidationError("company_domain is required and must be a string.")
    domain = value.strip().lower()
    if len(domain) > MAX_DOMAIN_LENGTH or not DOMAIN_PATTERN.match(domain):
        raise ResearchValidationError("company_domain is not a valid domain.", code="400_INVALID_DOMAIN")
    return domain


def _optional_uuid(value: Any, field_name: str) -> UUID | None:
    if value in (None, ""):
        return None
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise ResearchValidationError(f"{field_name} must be a valid UUID.") from exc


def _first_present(body: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = body.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_company_text(raw: Any) -> tuple[Any, CompanyResearchResult | None, str | None]:
    """Structured fields from callback text; unparseable text is kept under ``raw_text``."""
    data: Any = raw
    if isinstance(raw, str):
        try:
            data = decode_research_text(raw)
        except ResearchParseError as exc:
            return {"raw_text": raw}, None, str(exc)
    if isinstance(data, list) and data and isinstance(data[0], dict):
        data = data[0]
    if not isinstance(data, dict):
        return {"raw_text": raw}, None, PARSE_FAILURE_MESSAGE
    try:
        return data, CompanyResearchResult.model_validate(data), None
    except ValidationError:
        return data, None, PARSE_FAILURE_MESSAGE


def _extract_contacts(body: dict[str, Any]) -> list[dict[str, Any]]:
    batched = _first_present(body, "prospect", "prospects", "text")
    if batched is not None:
        if isinstance(batched, str):
            try:
                batched = decode_research_text(batched)
            except ResearchParseError as exc:
                raise ResearchValidationError("prospect data could not be parsed as JSON.") from exc
        if isinstance(batched, dict):
            contacts = batched.get("contacts")
            if isinstance(contacts, list):
                return [item for item in contacts if isinstance(item, dict)]
            return [batched]
        if isinstance(batched, list):
            return [item for item in batched if isinstance(item, dict)]
        raise ResearchValidationError("prospect data must be an object or a list.")
    if any(body.get(key) for key in _CONTACT_FIELDS):
        return [{key: body.get(key) for key in _CONTACT_FIELDS if body.get(key) is not None}]
    return []


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
