"""Endpoints for pushing prospects to Clay and receiving enrichment outcomes."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.models.research import ProspectResearchRecord
from app.services.research.enrichment import EnrichmentService
from app.services.research.runtime import get_enrichment_service

router = APIRouter()
logger = logging.getLogger(__name__)


class SendToClayRequest(BaseModel):
    user_id: UUID
    prospect_id: UUID | None = None
    prospect_ids: list[UUID] | None = None


class EnrichmentStatusRequest(BaseModel):
    personal_id: UUID
    status: str
    email: str | None = None
    phone: str | None = None


@router.post("/api/prospects/send-to-clay")
def send_to_clay(
    payload: SendToClayRequest,
    service: EnrichmentService = Depends(get_enrichment_service),
) -> dict[str, Any]:
    """Send one or many prospects to the Clay enrichment webhook."""
    ids = payload.prospect_ids or ([payload.prospect_id] if payload.prospect_id else [])
    return service.send_to_clay(payload.user_id, ids)


@router.post("/functions/clay-enrichment-status", response_model=ProspectResearchRecord)
def clay_enrichment_status(
    payload: EnrichmentStatusRequest,
    service: EnrichmentService = Depends(get_enrichment_service),
) -> ProspectResearchRecord:
    """Record Clay's verdict for a prospect tracked by personal_id."""
    return service.record_enrichment_result(
        payload.personal_id, payload.status, email=payload.email, phone=payload.phone
    )
