"""Run one research batch from a JSON file and persist the progress snapshot."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from uuid import UUID

from pydantic import ValidationError

from app.clients.research_webhook import ResearchWebhookClient
from app.models.research import Campaign, Company, UserIntegrations
from app.services.research.errors import ResearchError, ResearchValidationError
from app.services.research.events import NotificationBus
from app.services.research.orchestrator import BatchSummary, ResearchOrchestrator
from app.services.research.progress import BoardSnapshot, ProgressBoard
from app.services.research.repositories import ResearchStore, build_research_store

logger = logging.getLogger("pipelines.research_batch")


def load_batch(path: Path) -> tuple[UUID, Campaign | None, list[Company], UserIntegrations | None]:
    """Read ``{user_id, campaign?, companies[], integrations?}`` from ``path``.

    Companies without an explicit ``selected`` flag are selected.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ResearchValidationError(f"Batch file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ResearchValidationError(f"Batch file is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ResearchValidationError("Batch file must contain a JSON object.")

    try:
        user_id = UUID(str(data.get("user_id")))
    except ValueError as exc:
        raise ResearchValidationError("user_id must be a valid UUID.") from exc

    raw_companies = data.get("companies")
    if not isinstance(raw_companies, list) or not raw_companies:
        raise ResearchValidationError("companies must be a non-empty list.")

    try:
        campaign = Campaign.model_validate(data["campaign"]) if data.get("campaign") else None
        companies = [
            Company.model_validate({"selected": True, **item})
            for item in raw_companies
            if isinstance(item, dict)
        ]
        integrations_data = data.get("integrations")
        integrations = (
            UserIntegrations.model_validate({**integrations_data, "user_id": user_id})
            if isinstance(integrations_data, dict)
            else None
        )
    except ValidationError as exc:
        raise ResearchValidationError(f"Invalid batch file: {exc}") from exc
    return user_id, campaign, companies, integrations


def persist_snapshot(snapshot: BoardSnapshot, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse CLI args."""
    parser = argparse.ArgumentParser(description="Research a batch of companies through both research stages.")
    parser.add_argument("--input", type=Path, required=True, help="Batch JSON path.")
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("research/progress.json"),
        help="Where to write the final progress snapshot.",
    )
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL for the research store.")
    return parser.parse_args(argv)


async def run_pipeline(
    *,
    input_path: Path,
    output_path: Path,
    store: ResearchStore | None = None,
    webhooks: ResearchWebhookClient | None = None,
    database_url: str | None = None,
) -> tuple[BatchSummary, BoardSnapshot]:
    """Run one batch to completion and write the snapshot to ``output_path``."""
    user_id, campaign, companies, integrations = load_batch(input_path)
    logger.info("Loaded %s companies from %s.", len(companies), input_path)

    store = store or build_research_store(database_url)
    if campaign is not None:
        store.save_campaign(campaign)
    if integrations is not None:
        store.save_integrations(integrations)

    client_owned = webhooks is None
    client = webhooks or ResearchWebhookClient()
    bus = NotificationBus()
    orchestrator = ResearchOrchestrator(store, client, bus, ProgressBoard())
    try:
        summary = await orchestrator.run_batch(campaign, companies, user_id=user_id)
        await bus.drain()
    finally:
        orchestrator.close()
        if client_owned:
            await client.aclose()

    if summary is None:
        raise ResearchError("A research batch is already running.", code="409_BATCH_RUNNING")
    snapshot = orchestrator.board.snapshot()
    persist_snapshot(snapshot, output_path)
    logger.info(
        "research_batch.completed",
        extra={**summary.model_dump(), "output": str(output_path)},
    )
    return summary, snapshot


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    args = parse_args(argv if argv is not None else sys.argv[1:])
    try:
        summary, _ = asyncio.run(
            run_pipeline(input_path=args.input, output_path=args.output, database_url=args.database_url)
        )
    except ResearchError as exc:
        logger.error("Research batch failed: %s (code=%s)", exc, exc.code)
        return 1
    except Exception as exc:  # pragma: no cover - safety net
        logger.exception("Unexpected error during research batch: %s", exc)
        return 1
    return 0 if summary.errors == 0 else 2


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
