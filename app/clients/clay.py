"""Client for the Clay enrichment webhook."""

from __future__ import annotations

from typing import Any

import httpx

from app.config import settings


class ClayError(RuntimeError):
    """Base error for Clay webhook failures."""

    def __init__(self, message: str, code: str = "CLAY_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ClayTimeoutError(ClayError):
    """Raised when the Clay webhook times out."""

    def __init__(self, message: str = "Clay request timed out") -> None:
        super().__init__(message, code="CLAY_TIMEOUT")


class ClayClient:
    """Minimal Clay webhook client."""

    def __init__(
        self,
        *,
        timeout: float | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout or settings.clay_timeout_seconds)

    def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            self._http.close()

    def send_prospect(self, url: str, payload: dict[str, Any]) -> str:
        """POST one prospect to Clay and return the response body text."""
        try:
            response = self._http.post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise ClayTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise ClayError(f"HTTP error calling Clay: {exc}") from exc

        if not response.is_success:
            message = f"Clay request failed: {response.status_code}"
            detail = response.text[:200].strip()
            if detail:
                message = f"{message} - {detail}"
            raise ClayError(message, code=f"CLAY_{response.status_code}")
        return response.text

    def __enter__(self) -> ClayClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
