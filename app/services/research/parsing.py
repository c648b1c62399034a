"""Unwrap research webhook replies into plain JSON objects.

Research agents answer in a handful of envelopes: the raw model response
(``output[0].content[0].text``), a single-element array around any of the
other shapes, markdown-fenced JSON text, a plain JSON string, or the object
itself. ``parse_research_payload`` reduces all of them to a tagged result so
callers never need to guess which envelope arrived.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from app.services.research.errors import ResearchParseError

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)

SHAPE_OUTPUT = "output"
SHAPE_ARRAY = "array"
SHAPE_FENCED = "fenced_text"
SHAPE_OBJECT = "object"
SHAPE_TEXT = "text"


@dataclass(frozen=True)
class ParsedPayload:
    data: dict[str, Any]
    shape: str


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    raw: str | None = None


@dataclass(frozen=True)
class Acknowledgement:
    """Reply that accepted the job and promises a callback later."""

    company_research_id: UUID | None = None


def decode_research_text(text: str) -> Any:
    """Decode JSON text, stripping a markdown code fence when present."""
    candidate = (text or "").strip()
    if not candidate:
        raise ResearchParseError(raw=text)
    match = _FENCE_RE.search(candidate)
    if match:
        candidate = match.group(1).strip()
    try:
        return json.loads(candidate)
    except ValueError:
        pass
    # Prose around a bare object.
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(candidate[start : end + 1])
        except ValueError as exc:
            raise ResearchParseError(raw=text) from exc
    raise ResearchParseError(raw=text)


def parse_research_payload(raw: Any) -> ParsedPayload | ParseFailure:
    """Reduce any supported reply envelope to a JSON object."""
    if raw is None:
        return ParseFailure("Empty research response")

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    if isinstance(raw, dict):
        text = _output_text(raw)
        if text is not None:
            return _parse_text(text, shape=SHAPE_OUTPUT)
        return ParsedPayload(data=raw, shape=SHAPE_OBJECT)

    if isinstance(raw, list):
        if not raw:
            return ParseFailure("Empty research response", raw="[]")
        inner = parse_research_payload(raw[0])
        if isinstance(inner, ParseFailure):
            return inner
        return ParsedPayload(data=inner.data, shape=SHAPE_ARRAY)

    if isinstance(raw, str):
        shape = SHAPE_FENCED if _FENCE_RE.search(raw) else SHAPE_TEXT
        return _parse_text(raw, shape=shape)

    return ParseFailure("Unsupported research response type", raw=repr(raw))


def as_acknowledgement(data: dict[str, Any]) -> Acknowledgement | None:
    """Return an acknowledgement when ``data`` only confirms receipt."""
    status = str(data.get("status") or "").strip().lower()
    received = data.get("received") is True
    if not received and status != "processing":
        return None
    if data.get("company_status") or data.get("contacts"):
        return None
    research_id = data.get("company_research_id")
    parsed_id: UUID | None = None
    if research_id:
        try:
            parsed_id = UUID(str(research_id))
        except ValueError:
            parsed_id = None
    return Acknowledgement(company_research_id=parsed_id)


def _output_text(payload: dict[str, Any]) -> str | None:
    output = payload.get("output")
    if not isinstance(output, list) or not output:
        return None
    first = output[0]
    if not isinstance(first, dict):
        return None
    content = first.get("content")
    if not isinstance(content, list) or not content or not isinstance(content[0], dict):
        return None
    text = content[0].get("text")
    return text if isinstance(text, str) and text else None


def _parse_text(text: str, *, shape: str) -> ParsedPayload | ParseFailure:
    try:
        decoded = decode_research_text(text)
    except ResearchParseError as exc:
        return ParseFailure(str(exc), raw=text)
    if isinstance(decoded, list):
        inner = parse_research_payload(decoded)
        if isinstance(inner, ParseFailure):
            return ParseFailure(inner.reason, raw=text)
        return ParsedPayload(data=inner.data, shape=shape)
    if not isinstance(decoded, dict):
        return ParseFailure("Unable to parse research response", raw=text)
    return ParsedPayload(data=decoded, shape=shape)
