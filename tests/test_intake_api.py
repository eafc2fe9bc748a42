from conftest import ADA_PHONE, FakeParser, fetch_intakes, make_token
from intake_api.core.config import settings
from intake_api.db.models import ParseStatus

ANSWERS = {
    "communication_style": "Direct",
    "goals": "Scale the studio",
    "values": "Craft",
    "partnership_expectations": "Weekly updates",
}


def test_receive_data_resolves_by_session(client, registry, contacts):
    registry.put("CA123", ADA_PHONE)

    r = client.post("/intake/receive-data", json={"call_sid": "CA123", **ANSWERS})

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "success"
    assert body["created"] is True
    assert body["resolution_source"] == "session_registry"
    assert body["parse_scheduled"] is False

    rows = fetch_intakes()
    assert len(rows) == 1
    assert rows[0].id == body["intake_id"]
    assert (rows[0].contact_id, rows[0].user_id) == (42, 7)
    assert rows[0].professional_goals == "Scale the studio"


def test_duplicate_webhook_is_idempotent(client, registry, contacts):
    registry.put("CA123", ADA_PHONE)
    payload = {"call_sid": "CA123", **ANSWERS}

    first = client.post("/intake/receive-data", json=payload).json()
    second = client.post("/intake/receive-data", json=payload).json()

    assert first["intake_id"] == second["intake_id"]
    assert second["created"] is False
    assert len(fetch_intakes()) == 1


def test_idempotency_key_header(client, contacts):
    headers = {"Idempotency-Key": "evt-42"}
    first = client.post("/intake/receive-data", json={"caller_id": ADA_PHONE, **ANSWERS}, headers=headers)
    second = client.post(
        "/intake/receive-data",
        json={"caller_id": ADA_PHONE, "communication_style": "Thoughtful"},
        headers=headers,
    )

    assert first.json()["intake_id"] == second.json()["intake_id"]
    rows = fetch_intakes()
    assert len(rows) == 1
    assert rows[0].communication_style == "Thoughtful"
    assert rows[0].values == "Craft"


def test_unknown_contact_is_404_with_diagnostics(client, contacts):
    r = client.post("/intake/receive-data", json={"caller_id": "+1 (555) 000-0000", **ANSWERS})

    assert r.status_code == 404
    body = r.json()
    assert body["status"] == "error"
    assert body["details"]["normalized_phone"] == "+15550000000"
    assert fetch_intakes() == []


def test_no_identifier_is_400(client, contacts):
    r = client.post("/intake/receive-data", json=ANSWERS)
    assert r.status_code == 400
    assert r.json()["status"] == "error"


def test_unrecognized_body_requires_bearer_token(client, contacts):
    r = client.post("/intake/receive-data", json={"foo": "bar"})
    assert r.status_code == 401

    r = client.post(
        "/intake/receive-data",
        json={"foo": "bar"},
        headers={"Authorization": f"Bearer {make_token(7)}"},
    )
    assert r.status_code == 400


def test_bad_token_is_not_enough(client, contacts):
    r = client.post(
        "/intake/receive-data",
        json={"foo": "bar"},
        headers={"Authorization": f"Bearer {make_token(7, secret='wrong')}"},
    )
    assert r.status_code == 401


def test_shared_secret(client, registry, contacts, monkeypatch):
    monkeypatch.setattr(settings, "intake_webhook_secret", "s3cret")
    registry.put("CA123", ADA_PHONE)

    r = client.post("/intake/receive-data", json={"call_sid": "CA123", **ANSWERS})
    assert r.status_code == 401

    r = client.post(
        "/intake/receive-data",
        json={"call_sid": "CA123", **ANSWERS},
        headers={"X-Webhook-Secret": "s3cret"},
    )
    assert r.status_code == 200


def test_non_json_body_is_400(client, contacts):
    r = client.post(
        "/intake/receive-data",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 400


def test_unexpected_failure_is_500(client, contacts, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("database on fire")

    monkeypatch.setattr("intake_api.api.intake.run_intake", boom)

    r = client.post("/intake/receive-data", json={"caller_id": ADA_PHONE, **ANSWERS})

    assert r.status_code == 500
    assert r.json() == {
        "status": "error",
        "message": "Failed to process intake data",
        "details": "database on fire",
    }


def test_transcript_is_parsed_in_background(client, registry, parser, contacts):
    registry.put("CA999", ADA_PHONE)
    transcript = "agent: How do you like to communicate?\nuser: Directly."

    r = client.post("/intake/receive-data", json={"call_sid": "CA999", "raw_transcript": transcript})

    assert r.status_code == 200
    assert r.json()["parse_scheduled"] is True
    assert parser.calls == [transcript]

    rows = fetch_intakes()
    assert len(rows) == 1
    assert rows[0].id == r.json()["intake_id"]
    assert rows[0].raw_transcript == transcript
    assert rows[0].communication_style == "Direct and concise"
    assert rows[0].parse_status == ParseStatus.PARSED


def test_parse_failure_does_not_fail_webhook(client, registry, parser, contacts):
    parser.error = RuntimeError("model unavailable")
    registry.put("CA999", ADA_PHONE)

    r = client.post("/intake/receive-data", json={"call_sid": "CA999", "transcript": "user: hi"})

    assert r.status_code == 200
    row = fetch_intakes()[0]
    assert row.parse_status == ParseStatus.FAILED
    assert row.raw_transcript == "user: hi"
    assert row.communication_style is None


def test_transcript_turns_are_flattened(client, contacts):
    r = client.post("/intake/receive-data", json={
        "caller_id": ADA_PHONE,
        "transcript": [
            {"role": "agent", "message": "Hi Ada"},
            {"role": "user", "message": "Hello"},
        ],
    })
    assert r.status_code == 200
    assert fetch_intakes()[0].raw_transcript == "agent: Hi Ada\nuser: Hello"


def _store_transcript_only(client, registry, parser):
    parser.error = RuntimeError("first attempt fails")
    registry.put("CA999", ADA_PHONE)
    r = client.post("/intake/receive-data", json={"call_sid": "CA999", "raw_transcript": "user: hi"})
    parser.error = None
    return r.json()["intake_id"]


def test_reparse_requires_auth(client, contacts):
    assert client.post("/intake/parse-transcript/1").status_code == 401


def test_reparse_missing_row(client, contacts, auth_headers):
    assert client.post("/intake/parse-transcript/999", headers=auth_headers).status_code == 404


def test_reparse_without_transcript(client, registry, contacts, auth_headers):
    registry.put("CA123", ADA_PHONE)
    intake_id = client.post("/intake/receive-data", json={"call_sid": "CA123", **ANSWERS}).json()["intake_id"]

    r = client.post(f"/intake/parse-transcript/{intake_id}", headers=auth_headers)
    assert r.status_code == 400


def test_reparse_backfills_row(client, registry, parser, contacts, auth_headers):
    intake_id = _store_transcript_only(client, registry, parser)
    assert fetch_intakes()[0].parse_status == ParseStatus.FAILED

    r = client.post(f"/intake/parse-transcript/{intake_id}", headers=auth_headers)

    assert r.status_code == 200
    assert r.json() == {"message": "Transcript parsing started", "intake_id": intake_id}
    row = fetch_intakes()[0]
    assert row.parse_status == ParseStatus.PARSED
    assert row.values == "Honesty"


def test_reparse_other_users_row_is_hidden(client, registry, parser, contacts):
    intake_id = _store_transcript_only(client, registry, parser)
    headers = {"Authorization": f"Bearer {make_token(8)}"}
    assert client.post(f"/intake/parse-transcript/{intake_id}", headers=headers).status_code == 404


def test_get_intake(client, registry, contacts, auth_headers):
    registry.put("CA123", ADA_PHONE)
    intake_id = client.post("/intake/receive-data", json={"call_sid": "CA123", **ANSWERS}).json()["intake_id"]

    r = client.get(f"/api/intake/{intake_id}", headers=auth_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["contact_id"] == 42
    assert body["professional_goals"] == "Scale the studio"
    assert body["resolution_source"] == "session_registry"
    assert body["parse_status"] == "idle"

    assert client.get(f"/api/intake/{intake_id}").status_code == 401
    other = {"Authorization": f"Bearer {make_token(8)}"}
    assert client.get(f"/api/intake/{intake_id}", headers=other).status_code == 404
