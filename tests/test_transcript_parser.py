import json
from types import SimpleNamespace

import httpx
import pytest

from conftest import FakeParser
from intake_api.core.config import settings
from intake_api.db.database import SessionLocal
from intake_api.db.models import IntakeResponse, ParseStatus
from intake_api.services.transcript_jobs import run_transcript_parse, update_intake_with_parsed_data
from intake_api.services.transcript_parser import (
    EndpointTranscriptParser,
    OpenAITranscriptParser,
    ParsedIntake,
    TranscriptParseError,
    UnconfiguredTranscriptParser,
    build_transcript_parser,
)


def test_empty_transcript_is_total_failure():
    parser = FakeParser()
    with pytest.raises(TranscriptParseError):
        parser.parse("   ")
    assert parser.calls == []


def test_partial_result_is_kept():
    parser = FakeParser(result={"communication_style": "Warm", "values": None, "professional_goals": ""})
    parsed = parser.parse("agent: hi")
    assert parsed == ParsedIntake(communication_style="Warm")


def test_all_empty_result_is_total_failure():
    parser = FakeParser(result={"communication_style": None, "values": "null"})
    with pytest.raises(TranscriptParseError, match="missing required fields"):
        parser.parse("agent: hi")


def test_non_object_result_fails():
    with pytest.raises(TranscriptParseError):
        FakeParser(result=["not", "an", "object"]).parse("agent: hi")


def test_backend_errors_become_parse_errors():
    parser = FakeParser(error=TimeoutError("model timed out"))
    with pytest.raises(TranscriptParseError, match="model timed out"):
        parser.parse("agent: hi")


def test_list_answers_are_joined():
    parsed = FakeParser(result={"values": ["honesty", "craft"]}).parse("agent: hi")
    assert parsed.values == "honesty; craft"


def test_endpoint_parser_posts_transcript():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"professional_goals": "Open a second office"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    parser = EndpointTranscriptParser("https://llm.example/parse", api_key="k", client=client)

    parsed = parser.parse("user: I want a second office")

    assert parsed.professional_goals == "Open a second office"
    assert seen["auth"] == "Bearer k"
    assert seen["body"] == {"transcript": "user: I want a second office"}


def test_endpoint_parser_http_error():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    parser = EndpointTranscriptParser("https://llm.example/parse", client=client)

    with pytest.raises(TranscriptParseError):
        parser.parse("agent: hi")


def test_openai_parser_requests_json():
    captured = {}

    def create(**params):
        captured.update(params)
        message = SimpleNamespace(content=json.dumps({"values": "Trust"}))
        return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=None)

    fake_client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    parser = OpenAITranscriptParser("sk-test", model="gpt-4o-mini", client=fake_client)

    assert parser.parse("user: trust matters").values == "Trust"
    assert captured["response_format"] == {"type": "json_object"}
    assert captured["model"] == "gpt-4o-mini"
    assert "user: trust matters" in captured["messages"][1]["content"]


def test_build_transcript_parser_prefers_endpoint(monkeypatch):
    monkeypatch.setattr(settings, "llm_api_endpoint", "https://llm.example/parse")
    monkeypatch.setattr(settings, "openai_api_key", "sk-test")
    assert isinstance(build_transcript_parser(), EndpointTranscriptParser)

    monkeypatch.setattr(settings, "llm_api_endpoint", None)
    assert isinstance(build_transcript_parser(), OpenAITranscriptParser)

    monkeypatch.setattr(settings, "openai_api_key", None)
    parser = build_transcript_parser()
    assert isinstance(parser, UnconfiguredTranscriptParser)
    with pytest.raises(TranscriptParseError):
        parser.parse("agent: hi")


@pytest.fixture
def intake(db, contacts):
    row = IntakeResponse(contact_id=42, user_id=7, session_id="CA999", raw_transcript="agent: hi\nuser: hello")
    db.add(row)
    db.commit()
    return row.id


def test_background_parse_backfills_in_place(db, intake):
    assert run_transcript_parse(intake, FakeParser()) == ParseStatus.PARSED

    db.expire_all()
    row = db.get(IntakeResponse, intake)
    assert row.id == intake
    assert row.communication_style == "Direct and concise"
    assert row.partnership_expectations == "Regular check-ins"
    assert row.raw_transcript == "agent: hi\nuser: hello"
    assert row.parse_status == ParseStatus.PARSED
    assert row.parse_error is None
    assert db.query(IntakeResponse).count() == 1


def test_background_parse_failure_is_recorded(db, intake):
    parser = FakeParser(error=RuntimeError("upstream 500"))

    assert run_transcript_parse(intake, parser) == ParseStatus.FAILED

    db.expire_all()
    row = db.get(IntakeResponse, intake)
    assert row.parse_status == ParseStatus.FAILED
    assert "upstream 500" in row.parse_error
    assert row.raw_transcript == "agent: hi\nuser: hello"
    assert row.communication_style is None


def test_reparse_after_failure_succeeds(db, intake):
    run_transcript_parse(intake, FakeParser(error=RuntimeError("boom")))
    assert run_transcript_parse(intake, FakeParser()) == ParseStatus.PARSED

    db.expire_all()
    assert db.get(IntakeResponse, intake).parse_error is None


def test_missing_row_fails_quietly():
    assert run_transcript_parse(12345, FakeParser()) == ParseStatus.FAILED


def test_update_keeps_values_parser_left_empty(db, intake):
    db.get(IntakeResponse, intake).values = "Set by the provider"
    db.commit()

    assert update_intake_with_parsed_data(db, intake, ParsedIntake(communication_style="Warm"))
    db.commit()

    db.expire_all()
    row = db.get(IntakeResponse, intake)
    assert row.communication_style == "Warm"
    assert row.values == "Set by the provider"
    assert not update_intake_with_parsed_data(db, 999, ParsedIntake(values="x"))


class ProviderAnswersMidParse(FakeParser):
    """Simulates a duplicate delivery with direct answers landing while the model runs."""

    def _extract(self, transcript):
        session = SessionLocal()
        try:
            row = session.get(IntakeResponse, self.intake_id)
            row.communication_style = "Provider: prefers email"
            session.commit()
        finally:
            session.close()
        return super()._extract(transcript)


def test_parse_never_overwrites_answers_from_the_provider(db, intake):
    parser = ProviderAnswersMidParse()
    parser.intake_id = intake

    assert run_transcript_parse(intake, parser) == ParseStatus.PARSED

    db.expire_all()
    row = db.get(IntakeResponse, intake)
    assert row.communication_style == "Provider: prefers email"
    assert row.professional_goals == "Grow the consulting practice"
    assert row.parse_status == ParseStatus.PARSED
