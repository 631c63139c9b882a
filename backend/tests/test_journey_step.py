from datetime import timedelta

import pytest
from beanie import PydanticObjectId
from pydantic import ValidationError

from conftest import T0, RecordingSender
from donor_crm.models.journey import Journey, duplicate_node_ids
from donor_crm.models.journey_run import JourneyRun
from donor_crm.services.access import Caller
from donor_crm.services.journey_executor import JourneyExecutor
from factories import make_contact, make_journey, make_organization, make_run, node


def test_last_node_completes_run(run_db, clock, sender):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1", subject="Hi"), node("n2", "condition", conditionType="opened")])
        contact = await make_contact(org)
        run = await make_run(journey, contact, T0, status="running", current_node_id="n2")
        return await JourneyExecutor(sender=sender, clock=clock).step(run, journey)

    run = run_db(scenario)
    assert run.status == "completed"
    assert run.current_node_id is None
    assert run.scheduled_at is None
    assert len(run.history) == 1
    assert run.history[0].node_id == "n2"
    assert run.history[0].result == {"ok": True, "condition": {"type": "opened", "value": None}}


def test_inactive_journey_stops_run_without_history(run_db, clock, sender):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1")], status="inactive")
        contact = await make_contact(org)
        run = await make_run(journey, contact, T0)
        return await JourneyExecutor(sender=sender, clock=clock).step(run, journey)

    run = run_db(scenario)
    assert run.status == "stopped"
    assert run.history == []
    assert sender.sent == []


def test_missing_journey_stops_run(run_db, clock, sender):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1")])
        contact = await make_contact(org)
        run = await make_run(journey, contact, T0)
        return await JourneyExecutor(sender=sender, clock=clock).step(run, None)

    assert run_db(scenario).status == "stopped"


def test_removed_node_completes_run(run_db, clock, sender):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1")])
        contact = await make_contact(org)
        run = await make_run(journey, contact, T0, current_node_id="gone")
        return await JourneyExecutor(sender=sender, clock=clock).step(run, journey)

    run = run_db(scenario)
    assert run.status == "completed"
    assert run.history == []


def test_email_uses_subject_and_content_fallbacks(run_db, clock, sender):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1", title="Welcome", subtitle="Thanks for joining"), node("n2")])
        contact = await make_contact(org, email="donor@example.org")
        run = await make_run(journey, contact, T0)
        return await JourneyExecutor(sender=sender, clock=clock).step(run, journey)

    run = run_db(scenario)
    assert sender.sent == [
        {"channel": "email", "to": "donor@example.org", "subject": "Welcome", "html": "Thanks for joining"}
    ]
    assert run.status == "running"
    assert run.current_node_id == "n2"


def test_missing_channel_is_skipped_and_run_advances(run_db, clock, sender):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1", "whatsapp", content="Hello"), node("n2", "sms", delay="2h")])
        contact = await make_contact(org, phone=None, mobile=None, whatsapp=None)
        run = await make_run(journey, contact, T0)
        return await JourneyExecutor(sender=sender, clock=clock).step(run, journey)

    run = run_db(scenario)
    assert sender.sent == []
    assert run.history[0].result["skipped"] is True
    assert run.current_node_id == "n2"
    assert run.scheduled_at == T0 + timedelta(hours=2)


def test_whatsapp_falls_back_to_phone(run_db, clock, sender):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1", "whatsapp", title="Reminder")])
        contact = await make_contact(org, phone="+919800000001", mobile="+919800000002")
        run = await make_run(journey, contact, T0)
        await JourneyExecutor(sender=sender, clock=clock).step(run, journey)

    run_db(scenario)
    assert sender.sent == [{"channel": "whatsapp", "to": "+919800000001", "body": "Reminder"}]


def test_unknown_node_type_is_skipped(run_db, clock, sender):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1", "wait")])
        contact = await make_contact(org)
        run = await make_run(journey, contact, T0)
        return await JourneyExecutor(sender=sender, clock=clock).step(run, journey)

    run = run_db(scenario)
    assert run.status == "completed"
    assert run.history[0].result["ok"] is True
    assert run.history[0].result["skipped"] is True


def test_send_failure_is_recorded_and_run_advances(run_db, clock):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1"), node("n2")])
        contact = await make_contact(org)
        run = await make_run(journey, contact, T0)
        return await JourneyExecutor(sender=RecordingSender(fail=True), clock=clock).step(run, journey)

    run = run_db(scenario)
    result = run.history[0].result
    assert result["ok"] is False
    assert "gateway unavailable" in result["error"]
    assert run.consecutive_failures == 1
    assert run.status == "running"
    assert run.current_node_id == "n2"


def test_send_timeout_is_recorded_as_failure(run_db, clock):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1", "sms", content="Hi")])
        contact = await make_contact(org, phone="+919800000001")
        run = await make_run(journey, contact, T0)
        executor = JourneyExecutor(sender=RecordingSender(hang=True), clock=clock, send_timeout=0.05)
        return await executor.step(run, journey)

    run = run_db(scenario)
    assert run.history[0].result["ok"] is False
    assert "timed out" in run.history[0].result["error"]
    assert run.status == "completed"


def test_halt_policy_errors_run_after_repeated_failures(run_db, clock):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1"), node("n2"), node("n3")])
        contact = await make_contact(org)
        run = await make_run(journey, contact, T0)
        executor = JourneyExecutor(sender=RecordingSender(fail=True), clock=clock, max_consecutive_failures=2)
        await executor.step(run, journey)
        first_status = run.status
        await executor.step(run, journey)
        return first_status, run

    first_status, run = run_db(scenario)
    assert first_status == "running"
    assert run.status == "error"
    assert run.consecutive_failures == 2
    assert run.current_node_id is None
    assert len(run.history) == 2


def test_welcome_series_end_to_end(run_db, clock, sender):
    """Email now, SMS a day later, then done."""

    async def scenario():
        org = await make_organization()
        journey = await make_journey(
            org, [node("n1", "email", delay="0m", subject="Welcome"), node("n2", "sms", delay="1d", content="Day 2")]
        )
        contact = await make_contact(org, phone="+919800000001")
        executor = JourneyExecutor(sender=sender, clock=clock)
        await executor.enroll(journey.id, [str(contact.id)], Caller(role="admin"))

        enrolled = await JourneyRun.find_one()
        snapshots = [(enrolled.status, enrolled.current_node_id, enrolled.scheduled_at)]

        await executor.tick()
        run = await JourneyRun.get(enrolled.id)
        snapshots.append((run.status, run.current_node_id, run.scheduled_at))

        clock.advance(hours=23, minutes=59)
        untouched = await executor.tick()
        run = await JourneyRun.get(enrolled.id)
        snapshots.append((run.status, run.current_node_id, run.scheduled_at))

        clock.advance(minutes=1)
        await executor.tick()
        run = await JourneyRun.get(enrolled.id)
        snapshots.append((run.status, run.current_node_id, run.scheduled_at))
        return snapshots, untouched, run

    snapshots, untouched, run = run_db(scenario)
    assert snapshots[0] == ("pending", "n1", T0)
    assert snapshots[1] == ("running", "n2", T0 + timedelta(days=1))
    assert untouched == 0
    assert snapshots[2] == snapshots[1]
    assert snapshots[3] == ("completed", None, None)
    assert [entry.node_id for entry in run.history] == ["n1", "n2"]
    assert [message["channel"] for message in sender.sent] == ["email", "sms"]


def test_email_without_subject_or_title_uses_default_subject(run_db, clock, sender):
    async def scenario():
        org = await make_organization()
        journey = await make_journey(org, [node("n1", content="Thank you")])
        contact = await make_contact(org, email="donor@example.org")
        run = await make_run(journey, contact, T0)
        await JourneyExecutor(sender=sender, clock=clock).step(run, journey)

    run_db(scenario)
    assert sender.sent[0]["subject"] == "Email"


def test_journey_rejects_duplicate_node_ids(run_db):
    async def scenario():
        return Journey(name="Looping", organization=PydanticObjectId(), nodes=[node("a", "sms"), node("b", "sms"), node("a", "sms")])

    with pytest.raises(ValidationError, match="Duplicate node ids: a"):
        run_db(scenario)
    assert duplicate_node_ids([node("a"), node("b"), node("a"), node("b"), node("a")]) == ["a", "b"]
