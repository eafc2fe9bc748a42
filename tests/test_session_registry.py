from datetime import timedelta

import pytest

from intake_api.services.session_registry import InMemorySessionRegistry, SqlSessionRegistry

RETENTION = timedelta(hours=4)


@pytest.fixture(params=["memory", "sql"])
def store(request, db, clock):
    if request.param == "memory":
        return InMemorySessionRegistry(retention=RETENTION, clock=clock)
    return SqlSessionRegistry(db, retention=RETENTION, clock=clock)


def test_put_and_get(store):
    store.put("CA1", "+1 (555) 123-4567")
    assert store.get("CA1") == "+15551234567"
    assert store.get("CA-missing") is None


def test_put_is_last_write_wins(store, clock):
    store.put("CA1", "+15551234567")
    clock.advance(minutes=1)
    store.put("CA1", "+15559876543")
    assert store.get("CA1") == "+15559876543"
    assert len(store.list_entries()) == 1


def test_entry_visible_until_retention_expires(store, clock):
    store.put("CA1", "+15551234567")

    clock.advance(hours=4, minutes=-1)
    assert store.get("CA1") == "+15551234567"

    clock.advance(minutes=2)
    assert store.get("CA1") is None
    assert store.find_most_recent() is None


def test_put_refreshes_timestamp(store, clock):
    store.put("CA1", "+15551234567")
    clock.advance(hours=3)
    store.put("CA1", "+15551234567")
    clock.advance(hours=3)
    assert store.get("CA1") == "+15551234567"


def test_sweep_deletes_only_expired(store, clock):
    store.put("CA-old", "+15551234567")
    clock.advance(hours=5)
    store.put("CA-new", "+15559876543")

    assert store.sweep(RETENTION) == 1
    assert [e.session_id for e in store.list_entries()] == ["CA-new"]


def test_find_most_recent_by_phone_matches_any_format(store, clock):
    store.put("CA1", "+15551234567")
    clock.advance(minutes=1)
    store.put("CA2", "+15551234567")
    clock.advance(minutes=1)
    store.put("CA3", "+15559876543")

    assert store.find_most_recent_by_phone("5551234567") == "CA2"
    assert store.find_most_recent_by_phone("+15550000000") is None


def test_find_most_recent(store, clock):
    assert store.find_most_recent() is None
    store.put("CA1", "+15551234567")
    clock.advance(minutes=1)
    store.put("CA2", "+15559876543")
    assert store.find_most_recent() == ("CA2", "+15559876543")


def test_delete(store):
    store.put("CA1", "+15551234567")
    assert store.delete("CA1") is True
    assert store.delete("CA1") is False
    assert store.get("CA1") is None


def test_delete_by_phone_and_clear(store):
    store.put("CA1", "+15551234567")
    store.put("CA2", "+15551234567")
    store.put("CA3", "+15559876543")

    assert store.delete_by_phone("(555) 123-4567") == 2
    assert [e.session_id for e in store.list_entries()] == ["CA3"]

    assert store.clear() == 1
    assert store.list_entries() == []
