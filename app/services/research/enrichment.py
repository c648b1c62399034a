"""Push discovered prospects to Clay and record the enrichment outcome."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from app.clients.clay import ClayClient, ClayError
from app.clients.research_webhook import CLAY, WebhookNotConfiguredError, resolve_webhook_url
from app.models.research import ProspectResearchRecord, ProspectStatus, ResearchStatus
from app.observability.metrics import metrics
from app.services.research.errors import ResearchNotFoundError, ResearchValidationError
from app.services.research.repositories import ResearchStore

logger = logging.getLogger(__name__)

ENRICHMENT_OUTCOMES = (ProspectStatus.INPUTTED, ProspectStatus.DUPLICATE, ProspectStatus.FAIL)


class EnrichmentService:
    """Send prospects to the Clay webhook one by one."""

    def __init__(
        self,
        store: ResearchStore,
        clay: ClayClient,
        *,
        webhook_defaults: dict[str, str | None] | None = None,
    ) -> None:
        self._store = store
        self._clay = clay
        self._webhook_defaults = webhook_defaults

    def send_to_clay(self, user_id: UUID, prospect_ids: Sequence[UUID]) -> dict[str, Any]:
        """Send each prospect; one failure never stops the rest."""
        if not prospect_ids:
            raise ResearchValidationError("prospect_id or prospect_ids is required.")
        try:
            url = resolve_webhook_url(CLAY, self._store.get_integrations(user_id), self._webhook_defaults)
        except WebhookNotConfiguredError as exc:
            raise ResearchValidationError("Clay webhook URL not configured.", code="400_CLAY_NOT_CONFIGURED") from exc

        results: list[dict[str, Any]] = []
        for prospect_id in prospect_ids:
            error = self._send_one(url, user_id, prospect_id)
            entry: dict[str, Any] = {"prospect_id": str(prospect_id), "success": error is None}
            if error is not None:
                entry["error"] = error
            results.append(entry)

        sent = sum(1 for entry in results if entry["success"])
        failed = len(results) - sent
        metrics.increment("enrichment.sent", value=sent)
        if failed:
            metrics.increment("enrichment.failed", value=failed)
        logger.info(
            "research.enrichment.batch_sent",
            extra={"user_id": str(user_id), "sent": sent, "failed": failed},
        )
        return {"success": failed == 0, "sent": sent, "failed": failed, "results": results}

    def _send_one(self, url: str, user_id: UUID, prospect_id: UUID) -> str | None:
        prospect = self._store.get_prospect(prospect_id)
        if prospect is None or prospect.user_id != user_id:
            return "Prospect not found"
        research = self._store.get_company_research(prospect.company_research_id)
        if research is None or research.status != ResearchStatus.COMPLETED:
            return "Company research is not completed"
        if prospect.sent_to_clay and prospect.status != ProspectStatus.PENDING:
            return "Already processed by Clay"

        company = self._store.get_company(prospect.company_id) if prospect.company_id else None
        payload = {
            "personal_id": str(prospect.personal_id),
            "linkedin_url": prospect.linkedin_url,
            "salesforce_account_id": prospect.salesforce_account_id
            or (company.salesforce_account_id if company else None)
            or research.salesforce_account_id,
            "salesforce_campaign_id": prospect.salesforce_campaign_id,
        }
        try:
            self._clay.send_prospect(url, payload)
        except ClayError as exc:
            logger.warning(
                "research.enrichment.send_failed",
                extra={"prospect_id": str(prospect_id), "code": exc.code},
            )
            return str(exc)

        self._store.update_prospect(
            prospect.model_copy(
                update={
                    "sent_to_clay": True,
                    "sent_to_clay_at": datetime.now(timezone.utc),
                    "status": ProspectStatus.SENT_TO_CLAY,
                }
            )
        )
        return None

    def record_enrichment_result(
        self,
        personal_id: UUID,
        status: ProspectStatus | str,
        *,
        email: str | None = None,
        phone: str | None = None,
    ) -> ProspectResearchRecord:
        """Apply Clay's verdict to the prospect tracked by ``personal_id``."""
        raw_status = status.value if isinstance(status, ProspectStatus) else str(status)
        try:
            outcome = ProspectStatus(raw_status.strip().lower())
        except ValueError as exc:
            raise ResearchValidationError(f"Unsupported enrichment status: {status}.") from exc
        if outcome not in ENRICHMENT_OUTCOMES:
            raise ResearchValidationError(f"Unsupported enrichment status: {status}.")

        prospect = self._store.get_prospect_by_personal_id(personal_id)
        if prospect is None:
            raise ResearchNotFoundError(f"No prospect tracked by personal_id {personal_id}.")
        update: dict[str, Any] = {"status": outcome}
        if email:
            update["email"] = email.strip()
        if phone:
            update["phone"] = phone.strip()
        updated = self._store.update_prospect(prospect.model_copy(update=update))
        metrics.increment("enrichment.outcome", tags={"status": outcome.value})
        logger.info(
            "research.enrichment.outcome",
            extra={"prospect_id": str(updated.id), "status": outcome.value},
        )
        return updated
