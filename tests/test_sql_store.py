"""SQLAlchemy adapters against a throwaway SQLite database (aiosqlite)."""
import asyncio
import uuid
from datetime import timedelta

import pytest
import pytest_asyncio

from organmatch.core.config import Settings
from organmatch.core.exceptions import ConflictError
from organmatch.database import create_engine, create_session_factory, init_db
from organmatch.schemas.donor import OrganType
from organmatch.schemas.match import Match, MatchState, ScoreBreakdown
from organmatch.schemas.notification import Notification, NotificationKind, PartyType
from organmatch.services.engine import MatchingEngine
from organmatch.services.memory import InMemoryRegistry
from organmatch.services.retry import RetryPolicy
from organmatch.services.sql_store import SqlEventStore, SqlMatchStore, SqlNotificationLog, SqlRejectedPairLedger

from conftest import BASE_TIME, build_donor, build_recipient, no_sleep


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'matches.db'}")
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


def _match(donor_id="d1", recipient_id="r1"):
    return Match(
        donor_id=donor_id,
        recipient_id=recipient_id,
        organ=OrganType.KIDNEY,
        score=92,
        breakdown=ScoreBreakdown(blood_type=100, age=80, physical=80, medical_history=100),
        created_at=BASE_TIME,
    )


@pytest.mark.asyncio
async def test_insert_pending_claims_bindings(session_factory):
    store = SqlMatchStore(session_factory)
    first = _match()
    await store.insert_pending(first, ["donor:d1:kidney", "recipient:r1:kidney"])

    with pytest.raises(ConflictError):
        await store.insert_pending(_match(recipient_id="r2"), ["donor:d1:kidney", "recipient:r2:kidney"])

    assert await store.bound_match_id("donor:d1:kidney") == first.id
    assert await store.bound_match_id("recipient:r2:kidney") is None
    loaded = await store.get(first.id)
    assert loaded.score == 92
    assert loaded.breakdown.age == 80
    assert loaded.created_at == BASE_TIME
    assert [m.id for m in await store.list_matches()] == [first.id]


@pytest.mark.asyncio
async def test_transition_is_compare_and_set(session_factory):
    store = SqlMatchStore(session_factory)
    match = _match()
    await store.insert_pending(match, ["donor:d1:kidney", "recipient:r1:kidney"])

    accepted = await store.transition(match.id, MatchState.PENDING, MatchState.ACCEPTED, {"accepted_by": "h1"})
    assert accepted.state == MatchState.ACCEPTED
    assert accepted.version == 2
    assert await store.transition(match.id, MatchState.PENDING, MatchState.REJECTED, {}) is None

    completed = await store.transition(
        match.id, MatchState.ACCEPTED, MatchState.COMPLETED, {"completed_by": "h2"}, release_bindings=True
    )
    assert completed.state == MatchState.COMPLETED
    assert await store.bound_match_id("donor:d1:kidney") is None
    assert await store.list_matches(state=MatchState.PENDING) == []
    assert await store.transition(uuid.uuid4(), MatchState.PENDING, MatchState.ACCEPTED, {}) is None


@pytest.mark.asyncio
async def test_concurrent_inserts_claim_donor_binding_once(session_factory):
    store = SqlMatchStore(session_factory)
    matches = [_match(recipient_id=f"r{i}") for i in range(5)]

    results = await asyncio.gather(
        *(store.insert_pending(m, ["donor:d1:kidney", f"recipient:{m.recipient_id}:kidney"]) for m in matches),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert sum(isinstance(r, ConflictError) for r in results) == 4
    assert await store.bound_match_id("donor:d1:kidney") == winners[0].id
    assert [m.id for m in await store.list_matches()] == [winners[0].id]
    losers = [m for m in matches if m.id != winners[0].id]
    assert [await store.bound_match_id(f"recipient:{m.recipient_id}:kidney") for m in losers] == [None] * 4


@pytest.mark.asyncio
async def test_mark_settled_keeps_version(session_factory):
    store = SqlMatchStore(session_factory)
    match = _match()
    match.settled = False
    await store.insert_pending(match, ["donor:d1:kidney", "recipient:r1:kidney"])
    assert not (await store.get(match.id)).settled

    settled = await store.mark_settled(match.id)

    assert settled.settled
    assert settled.version == 1
    assert await store.mark_settled(uuid.uuid4()) is None


@pytest.mark.asyncio
async def test_rejected_pair_ledger(session_factory):
    ledger = SqlRejectedPairLedger(session_factory)
    assert await ledger.record("d1", "r1", OrganType.KIDNEY, "declined")
    assert not await ledger.record("d1", "r1", OrganType.KIDNEY, "again")
    assert await ledger.contains("d1", "r1", OrganType.KIDNEY)
    assert not await ledger.contains("d1", "r1", OrganType.LIVER)


@pytest.mark.asyncio
async def test_notification_log_round_trip(session_factory):
    log = SqlNotificationLog(session_factory)
    match_id = uuid.uuid4()
    notification = Notification(
        match_id=match_id,
        kind=NotificationKind.MATCH_FOUND,
        party=PartyType.DONOR,
        address="d1@donors.example",
        payload={"match_id": str(match_id)},
        created_at=BASE_TIME,
    )
    await log.add(notification)
    notification.attempts = 2
    notification.delivered = True
    notification.delivered_at = BASE_TIME
    await log.update(notification)

    [stored] = await log.for_match(match_id)
    assert stored.delivered
    assert stored.attempts == 2
    assert stored.party == PartyType.DONOR
    assert stored.delivered_at == BASE_TIME


@pytest.mark.asyncio
async def test_event_store_polls_new_events_only(session_factory):
    events = SqlEventStore(session_factory)
    await events.append_event("match.accept_requested", {"match_id": "old"})
    received = []

    async def handler(event_type, payload):
        received.append((event_type, payload["match_id"]))

    events.subscribe("match.accept_requested", handler)
    assert await events.poll_once() == 0  # positions the cursor

    await events.append_event("match.accept_requested", {"match_id": "new"})
    await events.append_event("match.created", {"match_id": "ignored"})
    assert await events.poll_once() == 2
    assert received == [("match.accept_requested", "new")]
    assert await events.poll_once() == 0


@pytest.mark.asyncio
async def test_engine_on_sql_stores(tmp_path, verifier, transport):
    settings = Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        WORKER_ENABLED=False,
        LOG_FILE="",
    )
    registry = InMemoryRegistry(donors=[build_donor("d1")], recipients=[build_recipient("r1")])
    engine = MatchingEngine.from_settings(settings, registry=registry, transport=transport, verifier=verifier)
    engine.dispatcher.retry_policy = RetryPolicy(sleep=no_sleep)
    await engine.start()
    try:
        match = await engine.lifecycle.propose_for_recipient("r1")
        accepted = await engine.lifecycle.accept(match.id, "recipient-hospital")
        again = await engine.lifecycle.accept(match.id, "recipient-hospital")

        assert accepted.state == MatchState.ACCEPTED
        assert again.version == accepted.version
        assert len(await engine.notification_log.for_match(match.id)) == 8
        assert len(transport.sent) == 8
    finally:
        await engine.stop()


def _notification(address, minutes=0, match_id=None):
    match_id = match_id or uuid.uuid4()
    return Notification(
        match_id=match_id,
        kind=NotificationKind.MATCH_FOUND,
        party=PartyType.RECIPIENT,
        address=address,
        payload={"match_id": str(match_id)},
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


@pytest.mark.asyncio
async def test_notification_inbox_by_address(session_factory):
    log = SqlNotificationLog(session_factory)
    first = await log.add(_notification("r1@patients.example"))
    second = await log.add(_notification("r1@patients.example", minutes=5))
    await log.add(_notification("r2@patients.example"))

    read = await log.mark_read(first.id, BASE_TIME + timedelta(hours=1))
    again = await log.mark_read(first.id, BASE_TIME + timedelta(hours=2))
    # A later delivery update leaves the read flag alone
    first.delivered = True
    await log.update(first)

    assert read.read and read.read_at == BASE_TIME + timedelta(hours=1)
    assert again.read_at == BASE_TIME + timedelta(hours=1)
    inbox = await log.for_address("r1@patients.example")
    assert [n.id for n in inbox] == [first.id, second.id]
    assert inbox[0].read and inbox[0].delivered
    assert [n.id for n in await log.for_address("r1@patients.example", unread_only=True)] == [second.id]
    assert await log.mark_read(uuid.uuid4(), BASE_TIME) is None
