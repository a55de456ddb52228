"""Pytest configuration and fixtures."""
from datetime import datetime, timedelta, timezone

import pytest

from organmatch.core.config import Settings
from organmatch.schemas.donor import (
    BloodType,
    Donor,
    MedicalHistory,
    OrganStatus,
    OrganType,
    Recipient,
    Urgency,
)
from organmatch.services.attestation import StaticAttestationVerifier
from organmatch.services.engine import MatchingEngine
from organmatch.services.memory import RecordingTransport
from organmatch.services.retry import RetryPolicy

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

HOSPITAL_SIGNATURE = "sig-general-hospital"
HOSPITAL_ID = "general-hospital"


async def no_sleep(delay):
    return None


def build_donor(
    donor_id="donor-1",
    organs=None,
    blood_type=BloodType.O_POS,
    age=35,
    height_cm=180,
    weight_kg=75,
    registered_minutes=0,
    **kwargs,
) -> Donor:
    if organs is None:
        organs = {OrganType.KIDNEY: OrganStatus.AVAILABLE}
    kwargs.setdefault("address", f"{donor_id}@donors.example")
    kwargs.setdefault("hospital_id", "donor-hospital")
    kwargs.setdefault("medical_history", MedicalHistory())
    return Donor(
        id=donor_id,
        organs=organs,
        blood_type=blood_type,
        age=age,
        height_cm=height_cm,
        weight_kg=weight_kg,
        registered_at=BASE_TIME + timedelta(minutes=registered_minutes),
        **kwargs,
    )


def build_recipient(
    recipient_id="recipient-1",
    organ_needed=OrganType.KIDNEY,
    blood_type=BloodType.O_POS,
    age=40,
    height_cm=178,
    weight_kg=73,
    urgency=Urgency.NORMAL,
    registered_minutes=0,
    **kwargs,
) -> Recipient:
    kwargs.setdefault("address", f"{recipient_id}@patients.example")
    kwargs.setdefault("hospital_id", "recipient-hospital")
    return Recipient(
        id=recipient_id,
        organ_needed=organ_needed,
        blood_type=blood_type,
        age=age,
        height_cm=height_cm,
        weight_kg=weight_kg,
        urgency=urgency,
        registered_at=BASE_TIME + timedelta(minutes=registered_minutes),
        **kwargs,
    )


@pytest.fixture
def make_donor():
    return build_donor


@pytest.fixture
def make_recipient():
    return build_recipient


@pytest.fixture
def settings():
    return Settings(_env_file=None, WORKER_ENABLED=False, LOG_FILE="", DEATH_CONFIRMATION_DEADLINE_SECONDS=30.0)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def verifier():
    return StaticAttestationVerifier({HOSPITAL_SIGNATURE: HOSPITAL_ID})


@pytest.fixture
def engine(settings, transport, verifier):
    """In-memory engine delivering notifications inline without backoff delays."""
    return MatchingEngine.in_memory(
        transport,
        verifier,
        settings=settings,
        retry_policy=RetryPolicy(max_attempts=3, sleep=no_sleep),
    )
