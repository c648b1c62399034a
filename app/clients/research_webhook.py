"""Async client for the external company and prospect research webhooks."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.config import settings
from app.models.research import UserIntegrations
from app.observability.metrics import metrics

logger = logging.getLogger(__name__)

COMPANY_RESEARCH = "company_research"
PEOPLE_RESEARCH = "people_research"
CLAY = "clay"


class WebhookError(RuntimeError):
    """Base error for research webhook failures."""

    def __init__(self, message: str, code: str = "WEBHOOK_ERROR") -> None:
        super().__init__(message)
        self.code = code


class WebhookTimeoutError(WebhookError):
    """Raised when a research webhook does not answer in time."""

    def __init__(self, message: str | None = None) -> None:
        limit = int(settings.webhook_timeout_seconds // 60)
        super().__init__(message or f"Request timed out ({limit} min limit)", code="WEBHOOK_TIMEOUT")


class WebhookHTTPError(WebhookError):
    """Raised when a research webhook answers with a non-2xx status."""

    def __init__(self, status_code: int, detail: str | None = None) -> None:
        message = detail or f"Request failed: {status_code}"
        super().__init__(message, code=f"WEBHOOK_{status_code}")
        self.status_code = status_code


class WebhookNotConfiguredError(WebhookError):
    """Raised when neither the user nor the settings provide a webhook URL."""

    def __init__(self, webhook_type: str) -> None:
        super().__init__(f"No webhook configured for {webhook_type}.", code="WEBHOOK_NOT_CONFIGURED")
        self.webhook_type = webhook_type


def resolve_webhook_url(
    webhook_type: str,
    integrations: UserIntegrations | None = None,
    defaults: dict[str, str | None] | None = None,
) -> str:
    """Per-user URL first, then the configured default."""
    if integrations is not None:
        url = integrations.webhook_for(webhook_type)
        if url and url.strip():
            return url.strip()
    fallback = (defaults if defaults is not None else settings.default_webhooks).get(webhook_type)
    if fallback and fallback.strip():
        return fallback.strip()
    raise WebhookNotConfiguredError(webhook_type)


class ResearchWebhookClient:
    """POST research payloads and return the decoded reply."""

    def __init__(
        self,
        *,
        timeout: float | None = None,
        connect_timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout or settings.webhook_timeout_seconds,
                connect=connect_timeout or settings.webhook_connect_timeout_seconds,
            )
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def invoke(self, url: str, payload: dict[str, Any], *, stage: str = "research") -> Any:
        """POST ``payload`` to ``url``.

        Returns the decoded JSON body, the raw text when the body is not JSON,
        or ``None`` for an empty body. Transport failures, timeouts and non-2xx
        statuses raise :class:`WebhookError` subclasses.
        """
        tags = {"stage": stage}
        try:
            with metrics.timer("webhook.latency_ms", tags=tags):
                response = await self._http.post(url, json=payload)
        except httpx.TimeoutException as exc:
            metrics.increment("webhook.timeouts", tags=tags)
            logger.warning("research.webhook.timeout", extra={"stage": stage, "url": url})
            raise WebhookTimeoutError() from exc
        except httpx.HTTPError as exc:
            metrics.increment("webhook.errors", tags=tags)
            logger.warning(
                "research.webhook.transport_error",
                extra={"stage": stage, "url": url, "error": type(exc).__name__},
            )
            raise WebhookError(f"HTTP error calling research webhook: {exc}") from exc

        if not response.is_success:
            detail = response.text[:500].strip() or None
            metrics.increment("webhook.errors", tags={**tags, "status": response.status_code})
            logger.warning(
                "research.webhook.http_error",
                extra={"stage": stage, "url": url, "status_code": response.status_code},
            )
            raise WebhookHTTPError(response.status_code, detail)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def __aenter__(self) -> ResearchWebhookClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
