"""API endpoints for starting, steering and observing research batches."""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from app.models.research import Campaign, Company
from app.services.research.errors import (
    ResearchNotFoundError,
    ResearchPreconditionError,
    ResearchValidationError,
)
from app.services.research.orchestrator import ResearchOrchestrator
from app.services.research.progress import BoardSnapshot, CompanyProgress, ResearchStage
from app.services.research.repositories import ResearchStore
from app.services.research.runtime import get_orchestrator, get_store

router = APIRouter()
logger = logging.getLogger(__name__)


class StartBatchRequest(BaseModel):
    """Companies come inline or, when omitted, from the stored campaign."""

    user_id: UUID
    campaign_id: UUID | None = None
    campaign: Campaign | None = None
    companies: list[Company] | None = None
    company_ids: list[UUID] | None = Field(
        default=None,
        description="Stored companies to select; all companies of the campaign when omitted.",
    )


class StartBatchResponse(BaseModel):
    accepted: bool
    total: int


class RetryRequest(BaseModel):
    stage: ResearchStage
    user_id: UUID | None = None


@router.post("/batches", response_model=StartBatchResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_batch(
    payload: StartBatchRequest,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
    store: ResearchStore = Depends(get_store),
) -> StartBatchResponse:
    """Start researching the selected companies in the background."""
    campaign = payload.campaign
    if campaign is None and payload.campaign_id is not None:
        campaign = store.get_campaign(payload.campaign_id)
        if campaign is None:
            raise ResearchNotFoundError("Campaign not found.")

    companies = payload.companies
    if companies is None:
        if campaign is None:
            raise ResearchValidationError("companies or campaign_id is required.")
        wanted = set(payload.company_ids or [])
        companies = [
            company.model_copy(update={"selected": not wanted or company.id in wanted})
            for company in store.list_companies(campaign.id)
        ]

    task = orchestrator.start_batch(campaign, companies, user_id=payload.user_id)
    if task is None:
        raise ResearchPreconditionError("A research batch is already running.", code="409_BATCH_RUNNING")
    total = sum(1 for company in companies if company.selected)
    logger.info("research.api.batch_accepted", extra={"user_id": str(payload.user_id), "total": total})
    return StartBatchResponse(accepted=True, total=total)


@router.post("/stop")
async def stop_batch(orchestrator: ResearchOrchestrator = Depends(get_orchestrator)) -> dict[str, bool]:
    """Stop after the in-flight company."""
    return {"stopped": orchestrator.stop()}


@router.post("/companies/{company_id}/retry", response_model=CompanyProgress)
async def retry_company(
    company_id: UUID,
    payload: RetryRequest,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
) -> CompanyProgress:
    """Re-run one research stage for one company."""
    return await orchestrator.retry_stage(company_id, payload.stage, user_id=payload.user_id)


@router.post("/companies/{company_id}/research-acquirer", response_model=CompanyProgress)
async def research_acquirer(
    company_id: UUID,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
) -> CompanyProgress:
    """Research the company that acquired this one instead."""
    return await orchestrator.research_acquirer(company_id)


@router.post("/hydrate")
async def hydrate_existing(orchestrator: ResearchOrchestrator = Depends(get_orchestrator)) -> dict[str, int]:
    """Load stored prospects into entries that have none yet."""
    return {"hydrated": orchestrator.hydrate_existing()}


@router.get("/progress", response_model=BoardSnapshot)
async def get_progress(orchestrator: ResearchOrchestrator = Depends(get_orchestrator)) -> BoardSnapshot:
    return orchestrator.board.snapshot()
