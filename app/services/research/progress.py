"""Per-company research progress and the shared board the orchestrator writes to.

Entries only ever move forward. The rank of a step orders the research
lifecycle (``company`` < awaiting company callback < ``people`` < awaiting
prospect callback < ``complete``); a write that would lower the rank keeps the
current step and only fills in data the entry is still missing. ``error`` sits
outside the ranking: any in-flight entry may fail, and an errored entry may be
lifted back out by a retry or by a notification that carries real results.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from enum import Enum
from threading import Lock
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field

from app.models.research import Company, CompanyResearchResult, CompanyStatus, ResearchContact
from app.services.research.payloads import company_domain


class ResearchStep(str, Enum):
    COMPANY = "company"
    PEOPLE = "people"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETE = "complete"
    ERROR = "error"


class ResearchStage(str, Enum):
    """Which research webhook an action or callback belongs to."""

    COMPANY = "company"
    PEOPLE = "people"


class CompanyProgress(BaseModel):
    """Progress of one company through both research stages."""

    company_id: UUID
    company_name: str
    company_domain: str
    step: ResearchStep = ResearchStep.COMPANY
    awaiting_stage: ResearchStage | None = None
    company_data: CompanyResearchResult | None = None
    contacts: list[ResearchContact] = Field(default_factory=list)
    company_research_id: UUID | None = None
    error: str | None = None
    raw_response: str | None = None
    prospecting_triggered: bool = False
    prospecting_eligible: bool | None = None

    model_config = ConfigDict(frozen=True)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status_line(self) -> str:
        if self.step == ResearchStep.ERROR:
            return self.error or "Research failed"
        if self.step == ResearchStep.COMPLETE:
            count = len(self.contacts)
            return f"{count} prospect{'' if count == 1 else 's'} found"
        if self.step == ResearchStep.COMPANY:
            return "Checking company status..."
        if self.step == ResearchStep.AWAITING_CALLBACK and self.awaiting_stage == ResearchStage.COMPANY:
            return "Waiting for company research results..."
        if self.prospecting_eligible is False and self.company_data is not None:
            status = self.company_data.company_status
            if status == CompanyStatus.BANKRUPT:
                return "Research stopped - company is bankrupt"
            if status == CompanyStatus.NOT_FOUND:
                return "Company could not be verified"
            if status == CompanyStatus.ACQUIRED and self.company_data.acquiredBy:
                return f"Acquired by {self.company_data.acquiredBy}"
            return "Company does not qualify for prospecting"
        return "Finding prospects..."


def step_rank(step: ResearchStep, awaiting_stage: ResearchStage | None = None) -> float:
    """Position of a step in the lifecycle; ``error`` ranks below everything."""
    if step == ResearchStep.AWAITING_CALLBACK:
        return 0.5 if awaiting_stage == ResearchStage.COMPANY else 1.5
    return {
        ResearchStep.ERROR: -1.0,
        ResearchStep.COMPANY: 0.0,
        ResearchStep.PEOPLE: 1.0,
        ResearchStep.COMPLETE: 2.0,
    }[step]


def can_transition(
    entry: CompanyProgress, step: ResearchStep, awaiting_stage: ResearchStage | None = None
) -> bool:
    if step == ResearchStep.ERROR:
        return entry.step != ResearchStep.COMPLETE
    if entry.step == ResearchStep.ERROR:
        return step in (ResearchStep.COMPANY, ResearchStep.PEOPLE, ResearchStep.COMPLETE)
    return step_rank(step, awaiting_stage) >= step_rank(entry.step, entry.awaiting_stage)


def transition(
    entry: CompanyProgress,
    step: ResearchStep,
    *,
    awaiting_stage: ResearchStage | None = None,
    **updates: Any,
) -> CompanyProgress:
    """Move ``entry`` to ``step`` or, when that would regress, merge missing data only."""
    if step == ResearchStep.AWAITING_CALLBACK and awaiting_stage is None:
        awaiting_stage = (
            ResearchStage.PEOPLE if entry.company_data is not None else ResearchStage.COMPANY
        )
    if can_transition(entry, step, awaiting_stage):
        if step != ResearchStep.ERROR:
            updates.setdefault("error", None)
        return entry.model_copy(
            update={
                "step": step,
                "awaiting_stage": awaiting_stage if step == ResearchStep.AWAITING_CALLBACK else None,
                **updates,
            }
        )
    return fill_missing(entry, **updates)


def fill_missing(entry: CompanyProgress, **updates: Any) -> CompanyProgress:
    """Merge ``updates`` into fields that are still empty on ``entry``."""
    merged = {key: value for key, value in updates.items() if _is_empty(getattr(entry, key, None))}
    merged.pop("error", None)
    if not merged:
        return entry
    return entry.model_copy(update=merged)


def reset(entry: CompanyProgress, *, company_name: str | None = None) -> CompanyProgress:
    """Return ``entry`` rewound to a fresh stage-1 attempt."""
    return entry.model_copy(
        update={
            "company_name": company_name or entry.company_name,
            "step": ResearchStep.COMPANY,
            "awaiting_stage": None,
            "company_data": None,
            "contacts": [],
            "company_research_id": None,
            "error": None,
            "raw_response": None,
            "prospecting_triggered": False,
            "prospecting_eligible": None,
        }
    )


def _is_empty(value: Any) -> bool:
    return value is None or value == [] or value is False


class BoardSnapshot(BaseModel):
    is_running: bool
    current_index: int | None
    current_company: str | None
    total: int
    completed: int
    companies: list[CompanyProgress]


class ProgressBoard:
    """Thread-safe progress store shared by the batch loop and notification handlers."""

    def __init__(self) -> None:
        self._entries: dict[UUID, CompanyProgress] = {}
        self._lock = Lock()
        self._is_running = False
        self._current_index: int | None = None
        self._current_company: str | None = None
        self._total = 0

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._is_running

    def start_batch(self, companies: Sequence[Company]) -> bool:
        """Claim the board for a new batch; False when one is already running."""
        with self._lock:
            if self._is_running:
                return False
            self._is_running = True
            self._entries = {company.id: _initial_entry(company) for company in companies}
            self._total = len(companies)
            self._current_index = None
            self._current_company = None
            return True

    def stop(self) -> bool:
        with self._lock:
            was_running = self._is_running
            self._is_running = False
            return was_running

    def set_current(self, index: int | None, company_name: str | None) -> None:
        with self._lock:
            self._current_index = index
            self._current_company = company_name

    def track(self, company: Company) -> CompanyProgress:
        """Ensure an entry exists for ``company`` outside of a batch."""
        with self._lock:
            entry = self._entries.get(company.id)
            if entry is None:
                entry = _initial_entry(company)
                self._entries[company.id] = entry
                self._total = len(self._entries)
            return entry

    def apply(
        self, company_id: UUID, update: Callable[[CompanyProgress], CompanyProgress]
    ) -> CompanyProgress | None:
        """Atomically replace the entry for ``company_id`` with ``update(entry)``."""
        with self._lock:
            entry = self._entries.get(company_id)
            if entry is None:
                return None
            updated = update(entry)
            self._entries[company_id] = updated
            return updated

    def get(self, company_id: UUID) -> CompanyProgress | None:
        with self._lock:
            return self._entries.get(company_id)

    def entries(self) -> list[CompanyProgress]:
        with self._lock:
            return list(self._entries.values())

    def find_by_domain(self, domain: str) -> CompanyProgress | None:
        """First tracked company, in input order, whose normalised domain matches."""
        needle = (domain or "").strip().lower()
        if not needle:
            return None
        with self._lock:
            for entry in self._entries.values():
                if entry.company_domain == needle:
                    return entry
        return None

    def find_by_research_id(self, company_research_id: UUID) -> CompanyProgress | None:
        with self._lock:
            for entry in self._entries.values():
                if entry.company_research_id == company_research_id:
                    return entry
        return None

    def snapshot(self) -> BoardSnapshot:
        with self._lock:
            companies = list(self._entries.values())
            return BoardSnapshot(
                is_running=self._is_running,
                current_index=self._current_index,
                current_company=self._current_company,
                total=self._total,
                completed=sum(1 for entry in companies if entry.step == ResearchStep.COMPLETE),
                companies=companies,
            )


def _initial_entry(company: Company) -> CompanyProgress:
    return CompanyProgress(
        company_id=company.id,
        company_name=company.name,
        company_domain=company_domain(company),
    )
