"""Tests for urgency / emergency elevation boosts."""
from datetime import timedelta

import pytest

from organmatch.core.exceptions import ValidationError
from organmatch.schemas.donor import OrganType, Urgency
from organmatch.schemas.elevation import ElevationLevel, EmergencyElevation
from organmatch.services.emergency_priority import ElevationBoard, EmergencyPriorityResolver, validate_level

from conftest import BASE_TIME, build_recipient


def _resolver(*elevations, **kwargs):
    board = ElevationBoard()
    for elevation in elevations:
        board.add(elevation)
    return EmergencyPriorityResolver(board, clock=lambda: BASE_TIME, **kwargs)


def _elevation(level, region=None, organ=OrganType.KIDNEY, minutes=60):
    return EmergencyElevation(
        organ=organ, region=region, level=level, expires_at=BASE_TIME + timedelta(minutes=minutes)
    )


def test_urgency_boosts():
    resolver = _resolver()
    assert resolver.boost_for(build_recipient(urgency=Urgency.NORMAL), OrganType.KIDNEY) == 0
    assert resolver.boost_for(build_recipient(urgency=Urgency.URGENT), OrganType.KIDNEY) == 8
    assert resolver.boost_for(build_recipient(urgency=Urgency.CRITICAL), OrganType.KIDNEY) == 15


def test_strongest_active_elevation_adds_to_urgency():
    resolver = _resolver(_elevation(ElevationLevel.LOW), _elevation(ElevationLevel.HIGH))
    recipient = build_recipient(urgency=Urgency.URGENT)
    assert resolver.boost_for(recipient, OrganType.KIDNEY) == 8 + 10
    assert resolver.boost_for(recipient, OrganType.LIVER) == 8


def test_region_scoping():
    resolver = _resolver(_elevation(ElevationLevel.CRITICAL, region="north"))
    assert resolver.boost_for(build_recipient(region="north"), OrganType.KIDNEY) == 15
    assert resolver.boost_for(build_recipient(region="south"), OrganType.KIDNEY) == 0
    assert resolver.boost_for(build_recipient(region=None), OrganType.KIDNEY) == 0


def test_expired_elevation_ignored_at_read_time():
    elevation = _elevation(ElevationLevel.MEDIUM, minutes=30)
    resolver = _resolver(elevation)
    recipient = build_recipient()
    assert resolver.boost_for(recipient, OrganType.KIDNEY) == 5
    assert resolver.boost_for(recipient, OrganType.KIDNEY, now=BASE_TIME + timedelta(minutes=30)) == 0
    # Reading past expiry prunes it
    assert resolver.board.all() == []


def test_custom_boost_tables():
    resolver = _resolver(
        _elevation(ElevationLevel.LOW),
        urgency_boosts={"critical": 40},
        elevation_boosts={"low": 1},
    )
    assert resolver.boost_for(build_recipient(urgency=Urgency.CRITICAL), OrganType.KIDNEY) == 41
    assert resolver.urgency_boost(Urgency.URGENT) == 8


def test_validate_level():
    assert validate_level("high") == ElevationLevel.HIGH
    with pytest.raises(ValidationError):
        validate_level("extreme")
