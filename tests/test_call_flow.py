from conftest import ADA_PHONE, fetch_intakes
from intake_api.db.models import CallStatus
from intake_api.services.call_log import CallLogService
from intake_api.services.session_registry import SqlSessionRegistry

ANSWERS = {
    "communication_style": "Direct",
    "goals": "Scale the studio",
    "values": "Craft",
    "partnership_expectations": "Weekly updates",
}


def test_call_start_then_intake_with_table_registry(sql_client, db, contacts):
    r = sql_client.post("/twilio/voice", data={"From": ADA_PHONE, "CallSid": "CA-flow"})
    assert r.status_code == 200
    assert SqlSessionRegistry(db).get("CA-flow") == ADA_PHONE

    first = sql_client.post("/intake/receive-data", json={"call_sid": "CA-flow", **ANSWERS})
    assert first.status_code == 200
    assert first.json()["created"] is True
    assert first.json()["resolution_source"] == "session_registry"

    db.expire_all()
    assert SqlSessionRegistry(db).list_entries() == []
    assert CallLogService(db).find_by_session_id("CA-flow").status == CallStatus.PROCESSED

    # Registry entry is gone, so the repeat resolves through the call log
    second = sql_client.post("/intake/receive-data", json={"call_sid": "CA-flow", **ANSWERS})
    assert second.status_code == 200
    assert second.json()["created"] is False
    assert second.json()["intake_id"] == first.json()["intake_id"]

    rows = fetch_intakes()
    assert len(rows) == 1
    assert (rows[0].contact_id, rows[0].session_id) == (42, "CA-flow")

    db.expire_all()
    assert SqlSessionRegistry(db).list_entries() == []
    assert CallLogService(db).find_by_session_id("CA-flow").status == CallStatus.PROCESSED


def test_unknown_caller_leaves_table_registry_intact(sql_client, db, contacts):
    sql_client.post("/twilio/voice", data={"From": "+15550000000", "CallSid": "CA-stranger"})

    r = sql_client.post("/intake/receive-data", json={"call_sid": "CA-stranger", **ANSWERS})

    assert r.status_code == 404
    assert r.json()["details"]["normalized_phone"] == "+15550000000"
    assert fetch_intakes() == []
    db.expire_all()
    assert SqlSessionRegistry(db).get("CA-stranger") == "+15550000000"
    assert CallLogService(db).find_by_session_id("CA-stranger").status == CallStatus.INITIATED
