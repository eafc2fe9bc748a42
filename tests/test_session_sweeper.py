import asyncio
from datetime import timedelta

from intake_api.core.clock import utcnow
from intake_api.db.models import SessionRegistryEntry
from intake_api.services import session_sweeper
from intake_api.services.session_sweeper import start_session_sweeper, sweep_session_registry


def test_sweep_removes_expired_rows(db):
    now = utcnow()
    db.add_all([
        SessionRegistryEntry(session_id="CA-old", phone_number="+15551234567", created_at=now - timedelta(hours=5)),
        SessionRegistryEntry(session_id="CA-new", phone_number="+15559876543", created_at=now - timedelta(minutes=5)),
    ])
    db.commit()

    assert sweep_session_registry(retention=timedelta(hours=4)) == 1

    db.expire_all()
    assert [e.session_id for e in db.query(SessionRegistryEntry).all()] == ["CA-new"]


def test_sweep_with_nothing_expired(db):
    assert sweep_session_registry(retention=timedelta(hours=4)) == 0


def test_sweeper_keeps_running_after_failures(monkeypatch):
    calls = []

    def fake_sweep(retention, session_factory):
        calls.append(retention)
        if len(calls) == 1:
            raise RuntimeError("database unavailable")
        return 0

    monkeypatch.setattr(session_sweeper, "sweep_session_registry", fake_sweep)

    async def scenario():
        task = asyncio.create_task(start_session_sweeper(interval_seconds=0.01, retention=timedelta(hours=1)))
        for _ in range(500):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return task

    task = asyncio.run(scenario())

    assert len(calls) >= 3
    assert all(r == timedelta(hours=1) for r in calls)
    assert task.done()
