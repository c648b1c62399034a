"""Callback endpoints the research agents post their results to."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends

from app.services.research.errors import ResearchValidationError
from app.services.research.receiver import ResultReceiver
from app.services.research.runtime import get_receiver

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/receive-company-results")
async def receive_company_results(
    body: Any = Body(...),
    receiver: ResultReceiver = Depends(get_receiver),
) -> dict[str, Any]:
    """Store a company research result and start prospect research when it qualifies."""
    return await receiver.receive_company_results(_require_object(body))


@router.post("/receive-prospect-results")
async def receive_prospect_results(
    body: Any = Body(...),
    receiver: ResultReceiver = Depends(get_receiver),
) -> dict[str, Any]:
    """Store one or more prospects for an existing company research record."""
    return await receiver.receive_prospect_results(_require_object(body))


def _require_object(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise ResearchValidationError("Request body must be a JSON object.")
    return body
