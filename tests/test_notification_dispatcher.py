"""Tests for notification fan-out, retries and consumer-side dedupe."""
import uuid

import pytest

from organmatch.core.exceptions import NotFoundError
from organmatch.schemas.match import MatchState
from organmatch.schemas.notification import NotificationKind, PartyType
from organmatch.services.memory import RecordingTransport
from organmatch.services.notification_dispatcher import NotificationInbox
from organmatch.services.engine import MatchingEngine
from organmatch.services.retry import RetryPolicy

from conftest import build_donor, build_recipient, no_sleep


def _engine(settings, verifier, transport):
    engine = MatchingEngine.in_memory(
        transport, verifier, settings=settings, retry_policy=RetryPolicy(max_attempts=3, sleep=no_sleep)
    )
    engine.registry.add_donor(build_donor("d1"))
    engine.registry.add_recipient(build_recipient("r1"))
    return engine


@pytest.mark.asyncio
async def test_transient_failures_are_retried(settings, verifier):
    transport = RecordingTransport(transient_failures={"r1@patients.example": 2})
    engine = _engine(settings, verifier, transport)

    match = await engine.lifecycle.propose_for_recipient("r1")
    notifications = await engine.notification_log.for_match(match.id)

    by_party = {n.party: n for n in notifications}
    assert by_party[PartyType.RECIPIENT].delivered
    assert by_party[PartyType.RECIPIENT].attempts == 3
    assert by_party[PartyType.DONOR].attempts == 1
    assert all(n.delivered for n in notifications)


@pytest.mark.asyncio
async def test_exhausted_delivery_is_recorded_not_raised(settings, verifier):
    transport = RecordingTransport(unreachable={"donor-hospital"})
    engine = _engine(settings, verifier, transport)

    match = await engine.lifecycle.propose_for_recipient("r1")

    assert match.state == MatchState.PENDING
    [failed] = [n for n in await engine.notification_log.for_match(match.id) if not n.delivered]
    assert failed.party == PartyType.DONOR_HOSPITAL
    assert failed.attempts == 3
    assert "donor-hospital" in failed.error


@pytest.mark.asyncio
async def test_absent_hospital_is_skipped(settings, verifier, transport):
    engine = MatchingEngine.in_memory(transport, verifier, settings=settings)
    engine.registry.add_donor(build_donor("d1", hospital_id=None))
    engine.registry.add_recipient(build_recipient("r1", hospital_id=None))

    match = await engine.lifecycle.propose_for_recipient("r1")
    notifications = await engine.notification_log.for_match(match.id)

    assert {n.party for n in notifications} == {PartyType.RECIPIENT, PartyType.DONOR}


@pytest.mark.asyncio
async def test_every_transition_notifies(settings, verifier, transport):
    engine = _engine(settings, verifier, transport)
    match = await engine.lifecycle.propose_for_recipient("r1")
    await engine.lifecycle.accept(match.id, "recipient-hospital")
    await engine.lifecycle.complete(match.id, "donor-hospital")

    kinds = [n.kind for n in await engine.notification_log.for_match(match.id)]
    assert kinds.count(NotificationKind.MATCH_FOUND) == 4
    assert kinds.count(NotificationKind.MATCH_ACCEPTED) == 4
    assert kinds.count(NotificationKind.MATCH_COMPLETED) == 4


@pytest.mark.asyncio
async def test_worker_delivers_in_background(settings, verifier, transport):
    engine = _engine(settings, verifier, transport)
    await engine.worker.start()
    try:
        match = await engine.lifecycle.propose_for_recipient("r1")
        await engine.worker.drain()
    finally:
        await engine.worker.stop()

    notifications = await engine.notification_log.for_match(match.id)
    assert len(notifications) == 4
    assert all(n.delivered for n in notifications)
    assert len(transport.sent) == 4


def test_inbox_dedupes_redelivery():
    inbox = NotificationInbox()
    payload = {"match_id": "m1", "party": "donor", "type": "match_found"}
    assert inbox.receive(payload)
    assert not inbox.receive(dict(payload))
    assert inbox.receive({**payload, "type": "match_accepted"})
    assert len(inbox.accepted) == 2


@pytest.mark.asyncio
async def test_party_inbox_tracks_read_state(settings, verifier, transport):
    engine = _engine(settings, verifier, transport)
    match = await engine.lifecycle.propose_for_recipient("r1")
    await engine.lifecycle.accept(match.id, "recipient-hospital")

    inbox = await engine.dispatcher.inbox("r1@patients.example")
    assert sorted(n.kind.value for n in inbox) == ["match_accepted", "match_found"]
    assert not any(n.read for n in inbox)

    read = await engine.dispatcher.mark_read(inbox[0].id)
    assert read.read and read.read_at is not None

    unread = await engine.dispatcher.inbox("r1@patients.example", unread_only=True)
    assert [n.id for n in unread] == [inbox[1].id]
    assert len(await engine.dispatcher.inbox("recipient-hospital")) == 2

    with pytest.raises(NotFoundError):
        await engine.dispatcher.mark_read(uuid.uuid4())
