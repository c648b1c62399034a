"""Persistence backends for campaigns, companies and research results."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from app.config import settings
from app.models.research import (
    Campaign,
    Company,
    CompanyResearchRecord,
    ProspectResearchRecord,
    UserIntegrations,
)
from app.models.research_record import (
    CampaignRow,
    CompanyResearchRow,
    CompanyRow,
    ProspectResearchRow,
    UserIntegrationsRow,
)
from app.observability.metrics import metrics
from app.services.research.errors import ResearchNotFoundError, ResearchPersistenceError

logger = logging.getLogger(__name__)


class ResearchStore(Protocol):
    """Persistence contract for the research workflow."""

    def save_campaign(self, campaign: Campaign) -> Campaign:
        ...

    def get_campaign(self, campaign_id: UUID) -> Campaign | None:
        ...

    def delete_campaign(self, campaign_id: UUID) -> bool:
        ...

    def save_company(self, company: Company) -> Company:
        ...

    def get_company(self, company_id: UUID) -> Company | None:
        ...

    def list_companies(self, campaign_id: UUID) -> list[Company]:
        ...

    def save_integrations(self, integrations: UserIntegrations) -> UserIntegrations:
        ...

    def get_integrations(self, user_id: UUID) -> UserIntegrations | None:
        ...

    def user_exists(self, user_id: UUID) -> bool:
        ...

    def insert_company_research(self, record: CompanyResearchRecord) -> CompanyResearchRecord:
        ...

    def update_company_research(self, record: CompanyResearchRecord) -> CompanyResearchRecord:
        ...

    def get_company_research(self, research_id: UUID) -> CompanyResearchRecord | None:
        ...

    def latest_company_research(self, user_id: UUID, company_domain: str) -> CompanyResearchRecord | None:
        ...

    def find_awaiting_receipt(self, user_id: UUID, company_domain: str) -> CompanyResearchRecord | None:
        ...

    def insert_prospect(self, record: ProspectResearchRecord) -> ProspectResearchRecord:
        ...

    def get_prospect(self, prospect_id: UUID) -> ProspectResearchRecord | None:
        ...

    def list_prospects(self, company_research_id: UUID) -> list[ProspectResearchRecord]:
        ...

    def get_prospect_by_personal_id(self, personal_id: UUID) -> ProspectResearchRecord | None:
        ...

    def update_prospect(self, record: ProspectResearchRecord) -> ProspectResearchRecord:
        ...


class InMemoryResearchStore(ResearchStore):
    """Thread-safe store used for tests and local development."""

    def __init__(self) -> None:
        self._campaigns: dict[UUID, Campaign] = {}
        self._companies: dict[UUID, Company] = {}
        self._integrations: dict[UUID, UserIntegrations] = {}
        self._company_research: dict[UUID, CompanyResearchRecord] = {}
        self._prospects: dict[UUID, ProspectResearchRecord] = {}
        self._lock = Lock()

    def save_campaign(self, campaign: Campaign) -> Campaign:
        with self._lock:
            self._campaigns[campaign.id] = campaign
        return campaign

    def get_campaign(self, campaign_id: UUID) -> Campaign | None:
        with self._lock:
            return self._campaigns.get(campaign_id)

    def delete_campaign(self, campaign_id: UUID) -> bool:
        with self._lock:
            if self._campaigns.pop(campaign_id, None) is None:
                return False
            research_ids = {
                record.id
                for record in self._company_research.values()
                if record.campaign_id == campaign_id
            }
            self._prospects = {
                key: prospect
                for key, prospect in self._prospects.items()
                if prospect.company_research_id not in research_ids
            }
            for research_id in research_ids:
                del self._company_research[research_id]
            self._companies = {
                key: company
                for key, company in self._companies.items()
                if company.campaign_id != campaign_id
            }
        logger.info(
            "research.persistence.campaign_deleted",
            extra={"campaign_id": str(campaign_id), "research_rows": len(research_ids), "backend": "memory"},
        )
        return True

    def save_company(self, company: Company) -> Company:
        stored = company.model_copy(update={"selected": False})
        with self._lock:
            self._companies[company.id] = stored
        return stored

    def get_company(self, company_id: UUID) -> Company | None:
        with self._lock:
            return self._companies.get(company_id)

    def list_companies(self, campaign_id: UUID) -> list[Company]:
        with self._lock:
            matches = [c for c in self._companies.values() if c.campaign_id == campaign_id]
        return sorted(matches, key=lambda company: company.created_at)

    def save_integrations(self, integrations: UserIntegrations) -> UserIntegrations:
        with self._lock:
            self._integrations[integrations.user_id] = integrations
        return integrations

    def get_integrations(self, user_id: UUID) -> UserIntegrations | None:
        with self._lock:
            return self._integrations.get(user_id)

    def user_exists(self, user_id: UUID) -> bool:
        with self._lock:
            return user_id in self._integrations

    def insert_company_research(self, record: CompanyResearchRecord) -> CompanyResearchRecord:
        with self._lock:
            self._company_research[record.id] = record
        metrics.increment("persistence.company_research.inserted", tags={"repository": "memory"})
        logger.info(
            "research.persistence.company_research_inserted",
            extra={
                "company_research_id": str(record.id),
                "company_domain": record.company_domain,
                "status": record.status.value,
                "backend": "memory",
            },
        )
        return record

    def update_company_research(self, record: CompanyResearchRecord) -> CompanyResearchRecord:
        with self._lock:
            if record.id not in self._company_research:
                raise ResearchNotFoundError(f"company_research {record.id} not found.")
            self._company_research[record.id] = record
        metrics.increment("persistence.company_research.updated", tags={"repository": "memory"})
        return record

    def get_company_research(self, research_id: UUID) -> CompanyResearchRecord | None:
        with self._lock:
            return self._company_research.get(research_id)

    def latest_company_research(self, user_id: UUID, company_domain: str) -> CompanyResearchRecord | None:
        matches = self._matching_research(user_id, company_domain)
        return matches[0] if matches else None

    def find_awaiting_receipt(self, user_id: UUID, company_domain: str) -> CompanyResearchRecord | None:
        for record in self._matching_research(user_id, company_domain):
            if record.awaiting_receipt:
                return record
        return None

    def insert_prospect(self, record: ProspectResearchRecord) -> ProspectResearchRecord:
        with self._lock:
            self._prospects[record.id] = record
        metrics.increment("persistence.prospect.inserted", tags={"repository": "memory"})
        return record

    def get_prospect(self, prospect_id: UUID) -> ProspectResearchRecord | None:
        with self._lock:
            return self._prospects.get(prospect_id)

    def list_prospects(self, company_research_id: UUID) -> list[ProspectResearchRecord]:
        with self._lock:
            ordered = [
                (index, prospect)
                for index, prospect in enumerate(self._prospects.values())
                if prospect.company_research_id == company_research_id
            ]
        ordered.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [prospect for _, prospect in ordered]

    def get_prospect_by_personal_id(self, personal_id: UUID) -> ProspectResearchRecord | None:
        with self._lock:
            for prospect in self._prospects.values():
                if prospect.personal_id == personal_id:
                    return prospect
        return None

    def update_prospect(self, record: ProspectResearchRecord) -> ProspectResearchRecord:
        with self._lock:
            if record.id not in self._prospects:
                raise ResearchNotFoundError(f"prospect_research {record.id} not found.")
            self._prospects[record.id] = record
        return record

    def _matching_research(self, user_id: UUID, company_domain: str) -> list[CompanyResearchRecord]:
        domain = company_domain.strip().lower()
        with self._lock:
            matches = [
                (index, record)
                for index, record in enumerate(self._company_research.values())
                if record.user_id == user_id and record.company_domain == domain
            ]
        matches.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [record for _, record in matches]


class SqlResearchStore(ResearchStore):
    """SQLModel-backed store that persists research rows to Postgres or SQLite."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
    ) -> None:
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlResearchStore.")

        parsed_url = make_url(database_url)
        sync_url, connect_args, drivername = _coerce_sync_database_url(parsed_url)
        pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
        pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
        is_sqlite = drivername.startswith("sqlite")
        engine_kwargs: dict[str, Any] = {
            "echo": False,
            "connect_args": connect_args,
            "pool_pre_ping": not is_sqlite,
        }
        if not is_sqlite:
            engine_kwargs["pool_size"] = pool_min
            engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)

        self._engine: Engine = create_engine(sync_url, **engine_kwargs)
        if auto_create_schema:
            SQLModel.metadata.create_all(self._engine)
        self._backend = _resolve_metrics_tag(parsed_url, drivername)
        self._metrics_tags = {"repository": self._backend}

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    def save_campaign(self, campaign: Campaign) -> Campaign:
        with self._guard("save_campaign", campaign_id=str(campaign.id)), self._session() as session:
            row = session.get(CampaignRow, campaign.id)
            incoming = CampaignRow.from_campaign(campaign)
            if row is None:
                session.add(incoming)
                row = incoming
            else:
                for key, value in incoming.model_dump(exclude={"id", "created_at"}).items():
                    setattr(row, key, value)
            session.commit()
            session.refresh(row)
            return row.to_campaign()

    def get_campaign(self, campaign_id: UUID) -> Campaign | None:
        with self._guard("get_campaign", campaign_id=str(campaign_id)), self._session() as session:
            row = session.get(CampaignRow, campaign_id)
            return row.to_campaign() if row else None

    def delete_campaign(self, campaign_id: UUID) -> bool:
        with self._guard("delete_campaign", campaign_id=str(campaign_id)), self._session() as session:
            campaign = session.get(CampaignRow, campaign_id)
            if campaign is None:
                return False
            research_rows = session.exec(
                select(CompanyResearchRow).where(CompanyResearchRow.campaign_id == campaign_id)
            ).all()
            research_ids = [row.id for row in research_rows]
            if research_ids:
                prospects = session.exec(
                    select(ProspectResearchRow).where(
                        ProspectResearchRow.company_research_id.in_(research_ids)  # type: ignore[union-attr]
                    )
                ).all()
                for prospect in prospects:
                    session.delete(prospect)
                session.flush()
            for row in research_rows:
                session.delete(row)
            companies = session.exec(select(CompanyRow).where(CompanyRow.campaign_id == campaign_id)).all()
            for company in companies:
                session.delete(company)
            session.delete(campaign)
            session.commit()
        logger.info(
            "research.persistence.campaign_deleted",
            extra={"campaign_id": str(campaign_id), "research_rows": len(research_ids), "backend": self._backend},
        )
        return True

    def save_company(self, company: Company) -> Company:
        with self._guard("save_company", company_id=str(company.id)), self._session() as session:
            row = session.get(CompanyRow, company.id)
            incoming = CompanyRow.from_company(company)
            if row is None:
                session.add(incoming)
                row = incoming
            else:
                for key, value in incoming.model_dump(exclude={"id", "created_at"}).items():
                    setattr(row, key, value)
            session.commit()
            session.refresh(row)
            return row.to_company()

    def get_company(self, company_id: UUID) -> Company | None:
        with self._guard("get_company", company_id=str(company_id)), self._session() as session:
            row = session.get(CompanyRow, company_id)
            return row.to_company() if row else None

    def list_companies(self, campaign_id: UUID) -> list[Company]:
        with self._guard("list_companies", campaign_id=str(campaign_id)), self._session() as session:
            rows = session.exec(
                select(CompanyRow).where(CompanyRow.campaign_id == campaign_id).order_by(CompanyRow.created_at)
            ).all()
            return [row.to_company() for row in rows]

    def save_integrations(self, integrations: UserIntegrations) -> UserIntegrations:
        with self._guard("save_integrations", user_id=str(integrations.user_id)), self._session() as session:
            row = session.get(UserIntegrationsRow, integrations.user_id)
            if row is None:
                row = UserIntegrationsRow.from_integrations(integrations)
                session.add(row)
            else:
                row.company_research_webhook_url = integrations.company_research_webhook_url
                row.people_research_webhook_url = integrations.people_research_webhook_url
                row.clay_webhook_url = integrations.clay_webhook_url
            session.commit()
            session.refresh(row)
            return row.to_integrations()

    def get_integrations(self, user_id: UUID) -> UserIntegrations | None:
        with self._guard("get_integrations", user_id=str(user_id)), self._session() as session:
            row = session.get(UserIntegrationsRow, user_id)
            return row.to_integrations() if row else None

    def user_exists(self, user_id: UUID) -> bool:
        return self.get_integrations(user_id) is not None

    def insert_company_research(self, record: CompanyResearchRecord) -> CompanyResearchRecord:
        row = CompanyResearchRow.from_record(record)
        with self._guard("insert_company_research", company_domain=record.company_domain), self._session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            persisted = row.to_record()
        metrics.increment("persistence.company_research.inserted", tags=self._metrics_tags)
        logger.info(
            "research.persistence.company_research_inserted",
            extra={
                "company_research_id": str(persisted.id),
                "company_domain": persisted.company_domain,
                "status": persisted.status.value,
                "backend": self._backend,
            },
        )
        return persisted

    def update_company_research(self, record: CompanyResearchRecord) -> CompanyResearchRecord:
        with self._guard("update_company_research", company_research_id=str(record.id)), self._session() as session:
            row = session.get(CompanyResearchRow, record.id)
            if row is None:
                raise ResearchNotFoundError(f"company_research {record.id} not found.")
            row.apply(record)
            session.commit()
            session.refresh(row)
            persisted = row.to_record()
        metrics.increment("persistence.company_research.updated", tags=self._metrics_tags)
        return persisted

    def get_company_research(self, research_id: UUID) -> CompanyResearchRecord | None:
        with self._guard("get_company_research", company_research_id=str(research_id)), self._session() as session:
            row = session.get(CompanyResearchRow, research_id)
            return row.to_record() if row else None

    def latest_company_research(self, user_id: UUID, company_domain: str) -> CompanyResearchRecord | None:
        return self._first_research(user_id, company_domain, awaiting_only=False)

    def find_awaiting_receipt(self, user_id: UUID, company_domain: str) -> CompanyResearchRecord | None:
        return self._first_research(user_id, company_domain, awaiting_only=True)

    def insert_prospect(self, record: ProspectResearchRecord) -> ProspectResearchRecord:
        row = ProspectResearchRow.from_record(record)
        with self._guard("insert_prospect", company_research_id=str(record.company_research_id)), self._session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            persisted = row.to_record()
        metrics.increment("persistence.prospect.inserted", tags=self._metrics_tags)
        return persisted

    def get_prospect(self, prospect_id: UUID) -> ProspectResearchRecord | None:
        with self._guard("get_prospect", prospect_id=str(prospect_id)), self._session() as session:
            row = session.get(ProspectResearchRow, prospect_id)
            return row.to_record() if row else None

    def list_prospects(self, company_research_id: UUID) -> list[ProspectResearchRecord]:
        with self._guard("list_prospects", company_research_id=str(company_research_id)), self._session() as session:
            rows = session.exec(
                select(ProspectResearchRow)
                .where(ProspectResearchRow.company_research_id == company_research_id)
                .order_by(ProspectResearchRow.created_at.desc())  # type: ignore[attr-defined]
            ).all()
            return [row.to_record() for row in rows]

    def get_prospect_by_personal_id(self, personal_id: UUID) -> ProspectResearchRecord | None:
        with self._guard("get_prospect_by_personal_id", personal_id=str(personal_id)), self._session() as session:
            row = session.exec(
                select(ProspectResearchRow).where(ProspectResearchRow.personal_id == personal_id)
            ).first()
            return row.to_record() if row else None

    def update_prospect(self, record: ProspectResearchRecord) -> ProspectResearchRecord:
        with self._guard("update_prospect", prospect_id=str(record.id)), self._session() as session:
            row = session.get(ProspectResearchRow, record.id)
            if row is None:
                raise ResearchNotFoundError(f"prospect_research {record.id} not found.")
            row.apply(record)
            session.commit()
            session.refresh(row)
            return row.to_record()

    def _first_research(
        self, user_id: UUID, company_domain: str, *, awaiting_only: bool
    ) -> CompanyResearchRecord | None:
        domain = company_domain.strip().lower()
        with self._guard("find_company_research", company_domain=domain), self._session() as session:
            statement = select(CompanyResearchRow).where(
                CompanyResearchRow.user_id == user_id,
                CompanyResearchRow.company_domain == domain,
            )
            if awaiting_only:
                statement = statement.where(CompanyResearchRow.awaiting_receipt.is_(True))  # type: ignore[attr-defined]
            row = session.exec(
                statement.order_by(CompanyResearchRow.created_at.desc())  # type: ignore[attr-defined]
            ).first()
            return row.to_record() if row else None

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session

    @contextmanager
    def _guard(self, operation: str, **context: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            metrics.increment("persistence.errors", tags={**self._metrics_tags, "operation": operation})
            logger.exception(
                "research.persistence.error",
                extra={"operation": operation, "backend": self._backend, **context},
            )
            raise ResearchPersistenceError(f"Failed to {operation.replace('_', ' ')}.") from exc


def _coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+psycopg"):
        drivername = drivername.replace("+psycopg", "+psycopg2")
    elif drivername.endswith("+aiosqlite"):
        drivername = "sqlite"
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = query.pop("ssl", None) is not None
    sync_url = sync_url.set(query=query)

    host = (url.host or "").lower()
    if drivername.startswith("postgresql") and "sslmode" not in query and (
        removed_ssl or "supabase.co" in host
    ):
        connect_args["sslmode"] = "require"
    if drivername.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def _resolve_metrics_tag(url: URL, drivername: str) -> str:
    host = (url.host or "").lower()
    if "supabase.co" in host:
        return "supabase"
    if drivername.startswith("sqlite"):
        return "sqlite"
    return "postgres"


def build_research_store(database_url: str | None = None) -> ResearchStore:
    """Instantiate a ResearchStore using DATABASE_URL when available."""
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        logger.info("research.store.initialized", extra={"backend": "memory"})
        return InMemoryResearchStore()
    try:
        store = SqlResearchStore(
            resolved_url,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
            auto_create_schema=settings.db_auto_create_schema,
        )
        logger.info("research.store.initialized", extra={"backend": "database"})
        return store
    except Exception:
        logger.exception("research.store.init_failed", extra={"backend": "database"})
        raise
