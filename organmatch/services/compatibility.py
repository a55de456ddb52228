"""
Compatibility scorer: donor/recipient medical suitability on a 0-100 scale.
Pure functions only; callers guarantee the pair is already matched on organ type.
"""
import logging
import math
from typing import Optional

from organmatch.core.exceptions import ValidationError
from organmatch.schemas.donor import BloodType, Donor, Location, Recipient
from organmatch.schemas.match import CompatibilityScore, ScoreBreakdown

logger = logging.getLogger(__name__)

# Donor blood type -> recipient blood types it can serve
BLOOD_COMPATIBILITY: dict[BloodType, frozenset[BloodType]] = {
    BloodType.O_NEG: frozenset(BloodType),  # universal donor
    BloodType.O_POS: frozenset({BloodType.O_POS, BloodType.A_POS, BloodType.B_POS, BloodType.AB_POS}),
    BloodType.A_NEG: frozenset({BloodType.A_NEG, BloodType.A_POS, BloodType.AB_NEG, BloodType.AB_POS}),
    BloodType.A_POS: frozenset({BloodType.A_POS, BloodType.AB_POS}),
    BloodType.B_NEG: frozenset({BloodType.B_NEG, BloodType.B_POS, BloodType.AB_NEG, BloodType.AB_POS}),
    BloodType.B_POS: frozenset({BloodType.B_POS, BloodType.AB_POS}),
    BloodType.AB_NEG: frozenset({BloodType.AB_NEG, BloodType.AB_POS}),
    BloodType.AB_POS: frozenset({BloodType.AB_POS}),
}

WEIGHTS = {"blood_type": 0.4, "age": 0.2, "physical": 0.2, "medical_history": 0.2}

# (max absolute age difference, score)
AGE_BANDS = [(5, 100), (10, 80), (15, 60), (20, 40)]
AGE_FLOOR = 20

# Applied to height (cm) and weight (kg) independently
PHYSICAL_BANDS = [(5, 50), (10, 30), (15, 20)]
PHYSICAL_FLOOR = 10
PHYSICAL_CAP = 100

MEDICAL_PENALTIES = {
    "chronic_disease": 30,
    "smoking_history": 20,
    "alcohol_history": 20,
}

DEFAULT_MIN_SCORE = 70

# Reputation: tie-breaker only
REPUTATION_PER_DONATION = 5
REPUTATION_DONATION_CAP = 20
REPUTATION_PER_VERIFICATION = 3
REPUTATION_VERIFICATION_CAP = 15

EARTH_RADIUS_KM = 6371.0


def blood_type_compatible(donor_type: BloodType, recipient_type: BloodType) -> bool:
    return recipient_type in BLOOD_COMPATIBILITY.get(donor_type, frozenset())


def compatible_donor_types(recipient_type: BloodType) -> set[BloodType]:
    """Blood types that can donate to the given recipient blood type."""
    return {donor for donor, served in BLOOD_COMPATIBILITY.items() if recipient_type in served}


def age_score(donor_age: int, recipient_age: int) -> int:
    diff = abs(donor_age - recipient_age)
    for limit, score in AGE_BANDS:
        if diff <= limit:
            return score
    return AGE_FLOOR


def _measurement_score(donor_value: Optional[float], recipient_value: Optional[float]) -> int:
    # A missing measurement lands in the lowest band.
    if donor_value is None or recipient_value is None:
        return PHYSICAL_FLOOR
    diff = abs(donor_value - recipient_value)
    for limit, score in PHYSICAL_BANDS:
        if diff <= limit:
            return score
    return PHYSICAL_FLOOR


def physical_score(donor: Donor, recipient: Recipient) -> int:
    height = _measurement_score(donor.height_cm, recipient.height_cm)
    weight = _measurement_score(donor.weight_kg, recipient.weight_kg)
    return min(PHYSICAL_CAP, height + weight)


def medical_history_score(donor: Donor) -> int:
    history = donor.medical_history
    score = 100
    for flag, penalty in MEDICAL_PENALTIES.items():
        if getattr(history, flag):
            score -= penalty
    return max(0, score)


def validate_pair(donor: Donor, recipient: Recipient) -> None:
    """Raise ValidationError when either record lacks a field the scorer needs."""
    missing = []
    if donor.blood_type is None:
        missing.append(f"donor {donor.id}: blood_type")
    if recipient.blood_type is None:
        missing.append(f"recipient {recipient.id}: blood_type")
    if donor.age is None:
        missing.append(f"donor {donor.id}: age")
    if recipient.age is None:
        missing.append(f"recipient {recipient.id}: age")
    if missing:
        raise ValidationError(f"Cannot score pair, missing {', '.join(missing)}")


def score_pair(donor: Donor, recipient: Recipient) -> CompatibilityScore:
    """
    Compute the weighted compatibility score for one donor/recipient pair.

    Blood type is a gate: an incompatible pair always totals 0, though the
    other sub-scores are still reported in the breakdown.

    Raises:
        ValidationError: if blood type or age is missing on either side
    """
    validate_pair(donor, recipient)

    blood = 100 if blood_type_compatible(donor.blood_type, recipient.blood_type) else 0
    breakdown = ScoreBreakdown(
        blood_type=blood,
        age=age_score(donor.age, recipient.age),
        physical=physical_score(donor, recipient),
        medical_history=medical_history_score(donor),
    )

    if blood == 0:
        return CompatibilityScore(total=0, breakdown=breakdown)

    weighted = sum(getattr(breakdown, name) * weight for name, weight in WEIGHTS.items())
    total = int(round(weighted))
    return CompatibilityScore(total=max(0, min(100, total)), breakdown=breakdown)


def is_viable(score: CompatibilityScore, min_score: int = DEFAULT_MIN_SCORE) -> bool:
    return score.breakdown.blood_type > 0 and score.total >= min_score


def donor_reputation(donor: Donor) -> int:
    """Secondary donor score from donation history and hospital verifications."""
    donations = min(donor.completed_donations * REPUTATION_PER_DONATION, REPUTATION_DONATION_CAP)
    verifications = min(donor.hospital_verifications * REPUTATION_PER_VERIFICATION, REPUTATION_VERIFICATION_CAP)
    return max(0, donations) + max(0, verifications)


def distance_km(a: Optional[Location], b: Optional[Location]) -> Optional[float]:
    """Haversine distance, or None when either location is unknown."""
    if a is None or b is None:
        return None
    d_lat = math.radians(b.lat - a.lat)
    d_lon = math.radians(b.lon - a.lon)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))
