from __future__ import annotations

import json
from uuid import uuid4

import pytest

from app.services.research.errors import PARSE_FAILURE_MESSAGE, ResearchParseError
from app.services.research.parsing import (
    SHAPE_ARRAY,
    SHAPE_FENCED,
    SHAPE_OBJECT,
    SHAPE_OUTPUT,
    SHAPE_TEXT,
    Acknowledgement,
    ParsedPayload,
    ParseFailure,
    as_acknowledgement,
    decode_research_text,
    parse_research_payload,
)
from tests.helpers.research_agents import fenced, output_envelope

RESULT = {
    "status": "completed",
    "company": "Acme",
    "company_status": "Operating",
    "cloud_preference": {"provider": "AWS", "confidence": 0.8, "evidence_urls": ["https://acme.io/jobs"]},
}


@pytest.mark.parametrize(
    ("raw", "shape"),
    [
        (RESULT, SHAPE_OBJECT),
        (json.dumps(RESULT), SHAPE_TEXT),
        (fenced(RESULT), SHAPE_FENCED),
        ([RESULT], SHAPE_ARRAY),
        ([fenced(RESULT)], SHAPE_ARRAY),
        (output_envelope(RESULT), SHAPE_OUTPUT),
        (output_envelope([RESULT]), SHAPE_OUTPUT),
        (json.dumps(RESULT).encode("utf-8"), SHAPE_TEXT),
    ],
)
def test_every_envelope_unwraps_to_the_same_object(raw, shape):
    parsed = parse_research_payload(raw)
    assert isinstance(parsed, ParsedPayload)
    assert parsed.data == RESULT
    assert parsed.shape == shape


def test_fenced_and_unwrapped_payloads_parse_identically():
    assert parse_research_payload(fenced(RESULT)).data == parse_research_payload(RESULT).data


def test_fence_without_language_tag_is_stripped():
    parsed = parse_research_payload(f"```\n{json.dumps(RESULT)}\n```")
    assert parsed.data == RESULT


def test_prose_around_object_is_tolerated():
    parsed = parse_research_payload(f"Here is the research: {json.dumps(RESULT)} Let me know!")
    assert isinstance(parsed, ParsedPayload)
    assert parsed.data["company_status"] == "Operating"


@pytest.mark.parametrize("raw", ["definitely not json", "```json\n{broken\n```", "[]", "42"])
def test_unparseable_text_keeps_the_raw_reply(raw):
    parsed = parse_research_payload(raw)
    assert isinstance(parsed, ParseFailure)
    assert parsed.raw == raw


def test_garbage_reports_the_parse_failure_message():
    parsed = parse_research_payload("definitely not json")
    assert parsed.reason == PARSE_FAILURE_MESSAGE


@pytest.mark.parametrize("raw", [None, [], 42])
def test_empty_or_unsupported_replies_fail(raw):
    assert isinstance(parse_research_payload(raw), ParseFailure)


def test_decode_research_text_rejects_blank_input():
    with pytest.raises(ResearchParseError) as excinfo:
        decode_research_text("   ")
    assert excinfo.value.code == "RESEARCH_PARSE_ERROR"


def test_processing_status_is_an_acknowledgement():
    assert as_acknowledgement({"status": "processing"}) == Acknowledgement(company_research_id=None)


def test_received_acknowledgement_carries_research_id():
    research_id = uuid4()
    ack = as_acknowledgement({"received": True, "company_research_id": str(research_id)})
    assert ack == Acknowledgement(company_research_id=research_id)


def test_acknowledgement_with_invalid_id_drops_the_id():
    ack = as_acknowledgement({"received": True, "company_research_id": "not-a-uuid"})
    assert ack == Acknowledgement(company_research_id=None)


@pytest.mark.parametrize(
    "data",
    [
        {"status": "completed", "company_status": "Operating"},
        {"received": True, "company_status": "Bankrupt"},
        {"status": "processing", "contacts": [{"first_name": "Ada"}]},
        {"received": "yes"},
    ],
)
def test_results_are_not_acknowledgements(data):
    assert as_acknowledgement(data) is None
