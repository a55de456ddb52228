"""Tests for death confirmation and the triggered match search."""
import pytest

from organmatch.core.exceptions import NotFoundError, UnauthorizedError
from organmatch.schemas.donor import OrganStatus, OrganType
from organmatch.schemas.match import MatchState

from conftest import HOSPITAL_ID, HOSPITAL_SIGNATURE, build_donor, build_recipient

PLEDGED = {OrganType.KIDNEY: OrganStatus.REGISTERED, OrganType.LIVER: OrganStatus.REGISTERED}


@pytest.fixture
def pledged(engine):
    engine.registry.add_donor(build_donor("d1", organs=dict(PLEDGED)))
    engine.registry.add_recipient(build_recipient("r-kidney", organ_needed=OrganType.KIDNEY))
    engine.registry.add_recipient(build_recipient("r-liver", organ_needed=OrganType.LIVER))
    return engine


@pytest.mark.asyncio
async def test_confirmation_creates_one_match_per_organ(pledged, transport):
    summary = await pledged.deaths.confirm_death("d1", "cert-hash", HOSPITAL_SIGNATURE)

    assert summary.confirmed_by == HOSPITAL_ID
    assert summary.created_count == 2
    assert sorted(m.recipient_id for m in summary.created) == ["r-kidney", "r-liver"]
    assert all(m.state == MatchState.PENDING for m in summary.created)
    assert summary.errors == []
    assert not summary.deadline_exceeded
    assert len(transport.sent) == 8

    donor = await pledged.registry.get_donor("d1")
    assert donor.death_confirmed_by == HOSPITAL_ID
    assert donor.death_certificate_hash == "cert-hash"
    assert set(donor.organs.values()) == {OrganStatus.AVAILABLE}


@pytest.mark.asyncio
async def test_unauthorized_attestation_changes_nothing(pledged):
    with pytest.raises(UnauthorizedError):
        await pledged.deaths.confirm_death("d1", "cert-hash", "forged")

    donor = await pledged.registry.get_donor("d1")
    assert donor.death_confirmed_at is None
    assert set(donor.organs.values()) == {OrganStatus.REGISTERED}
    assert await pledged.lifecycle.list_matches() == []


@pytest.mark.asyncio
async def test_unknown_donor(pledged):
    with pytest.raises(NotFoundError):
        await pledged.deaths.confirm_death("ghost", "cert-hash", HOSPITAL_SIGNATURE)


@pytest.mark.asyncio
async def test_reconfirmation_is_a_no_op(pledged):
    first = await pledged.deaths.confirm_death("d1", "cert-hash", HOSPITAL_SIGNATURE)
    second = await pledged.deaths.confirm_death("d1", "cert-hash", HOSPITAL_SIGNATURE)

    assert not first.already_confirmed
    assert second.already_confirmed
    assert second.created_count == 0
    assert len(await pledged.lifecycle.list_matches()) == 2


@pytest.mark.asyncio
async def test_each_candidate_is_offered_and_conflicts_are_skipped(engine):
    engine.registry.add_donor(build_donor("d1", organs={OrganType.KIDNEY: OrganStatus.REGISTERED}))
    engine.registry.add_recipient(build_recipient("r1"))
    engine.registry.add_recipient(build_recipient("r2", registered_minutes=5))

    summary = await engine.deaths.confirm_death("d1", "cert-hash", HOSPITAL_SIGNATURE)

    assert [m.recipient_id for m in summary.created] == ["r1"]
    assert [s.recipient_id for s in summary.skipped] == ["r2"]


@pytest.mark.asyncio
async def test_candidate_failure_does_not_abort_batch(pledged, monkeypatch):
    original_create = pledged.lifecycle.create

    async def flaky_create(candidate):
        if candidate.organ == OrganType.KIDNEY:
            raise RuntimeError("store unavailable")
        return await original_create(candidate)

    monkeypatch.setattr(pledged.lifecycle, "create", flaky_create)

    summary = await pledged.deaths.confirm_death("d1", "cert-hash", HOSPITAL_SIGNATURE)

    assert [m.organ for m in summary.created] == [OrganType.LIVER]
    assert len(summary.errors) == 1
    assert summary.errors[0].organ == OrganType.KIDNEY
    assert summary.errors[0].recipient_id == "r-kidney"
    assert "store unavailable" in summary.errors[0].error


@pytest.mark.asyncio
async def test_deadline_stops_processing_without_rollback(pledged):
    summary = await pledged.deaths.confirm_death("d1", "cert-hash", HOSPITAL_SIGNATURE, deadline_seconds=0)

    assert summary.deadline_exceeded
    assert summary.created_count == 0
    assert sorted(summary.unprocessed_organs) == sorted([OrganType.KIDNEY, OrganType.LIVER])
    # Organs are released even when matching ran out of time
    donor = await pledged.registry.get_donor("d1")
    assert set(donor.organs.values()) == {OrganStatus.AVAILABLE}


@pytest.mark.asyncio
async def test_processing_fact_is_appended(pledged):
    await pledged.deaths.confirm_death("d1", "cert-hash", HOSPITAL_SIGNATURE)
    [fact] = pledged.events.of_type("death.processed")
    assert fact["donor_id"] == "d1"
    assert fact["hospital_id"] == HOSPITAL_ID
    assert len(fact["created"]) == 2


@pytest.mark.asyncio
async def test_deadline_passing_mid_batch_keeps_created_matches(engine, monkeypatch):
    engine.registry.add_donor(build_donor("d1", organs={OrganType.KIDNEY: OrganStatus.REGISTERED}))
    for i in range(3):
        engine.registry.add_recipient(build_recipient(f"r{i}", registered_minutes=i))

    elapsed = [0.0]
    engine.deaths.timer = lambda: elapsed[0]
    original_create = engine.lifecycle.create

    async def slow_create(candidate):
        match = await original_create(candidate)
        elapsed[0] += 10.0
        return match

    monkeypatch.setattr(engine.lifecycle, "create", slow_create)

    summary = await engine.deaths.confirm_death("d1", "cert-hash", HOSPITAL_SIGNATURE, deadline_seconds=5)

    assert summary.deadline_exceeded
    assert summary.created_count == 1
    assert summary.unprocessed_candidates == 2
    assert summary.unprocessed_organs == []
    [live] = await engine.lifecycle.list_matches(state=MatchState.PENDING)
    assert live.id == summary.created[0].id
    assert live.recipient_id == "r0"
