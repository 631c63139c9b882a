import pytest

from donor_crm import tasks
from donor_crm.db import init as db_init
from donor_crm.services.journey_executor import JourneyExecutor


class _Client:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def _stub_db(monkeypatch):
    calls = []

    async def fake_init_db():
        calls.append("init")

    monkeypatch.setattr(tasks, "init_db", fake_init_db)
    monkeypatch.setattr(tasks, "close_db", lambda: calls.append("close"))
    return calls


def test_close_db_closes_and_forgets_client(monkeypatch):
    client = _Client()
    monkeypatch.setattr(db_init, "_client", client)
    monkeypatch.setattr(db_init, "_database", object())

    db_init.close_db()

    assert client.closed
    with pytest.raises(RuntimeError):
        db_init.get_database()


def test_tick_task_closes_connection(monkeypatch):
    calls = _stub_db(monkeypatch)

    async def fake_tick(self):
        return 4

    monkeypatch.setattr(JourneyExecutor, "tick", fake_tick)
    assert tasks.process_due_journey_runs_task() == 4
    assert calls == ["init", "close"]


def test_tick_task_closes_connection_when_tick_fails(monkeypatch):
    calls = _stub_db(monkeypatch)

    async def broken_tick(self):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(JourneyExecutor, "tick", broken_tick)
    with pytest.raises(RuntimeError):
        tasks.process_due_journey_runs_task()
    assert calls == ["init", "close"]


def test_release_task_closes_connection(monkeypatch):
    calls = _stub_db(monkeypatch)

    async def fake_release(self, older_than=None):
        return 2

    monkeypatch.setattr(JourneyExecutor, "release_stale_claims", fake_release)
    assert tasks.release_stale_claims_task() == 2
    assert calls == ["init", "close"]
