"""
Emergency priority: turns recipient urgency and active emergency elevations
into a ranking boost. The boost only orders candidates; it never changes the
compatibility score stored on a match.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from organmatch.core.exceptions import ValidationError
from organmatch.schemas.donor import OrganType, Recipient, Urgency
from organmatch.schemas.elevation import ElevationLevel, EmergencyElevation

logger = logging.getLogger(__name__)

DEFAULT_URGENCY_BOOSTS: Dict[str, float] = {
    Urgency.NORMAL.value: 0.0,
    Urgency.URGENT.value: 8.0,
    Urgency.CRITICAL.value: 15.0,
}

DEFAULT_ELEVATION_BOOSTS: Dict[str, float] = {
    ElevationLevel.LOW.value: 2.0,
    ElevationLevel.MEDIUM.value: 5.0,
    ElevationLevel.HIGH.value: 10.0,
    ElevationLevel.CRITICAL.value: 15.0,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_level(level: str) -> ElevationLevel:
    try:
        return ElevationLevel(level)
    except ValueError:
        raise ValidationError(
            f"Invalid emergency level '{level}'; expected one of {[lvl.value for lvl in ElevationLevel]}"
        )


class ElevationBoard:
    """Holds emergency elevations; expiry is evaluated at read time, which also prunes them."""

    def __init__(self):
        self._elevations: List[EmergencyElevation] = []

    def add(self, elevation: EmergencyElevation) -> EmergencyElevation:
        self._elevations.append(elevation)
        logger.info(
            f"Emergency elevation {elevation.level.value} for {elevation.organ.value} "
            f"in region {elevation.region or '*'} until {elevation.expires_at.isoformat()}"
        )
        return elevation

    def all(self) -> List[EmergencyElevation]:
        return list(self._elevations)

    def active(self, organ: OrganType, region: Optional[str], now: datetime) -> List[EmergencyElevation]:
        # Expired elevations never come back, so they are dropped as they are seen
        self._elevations = [e for e in self._elevations if e.is_active(now)]
        return [e for e in self._elevations if e.applies_to(organ, region)]


class EmergencyPriorityResolver:
    def __init__(
        self,
        board: ElevationBoard,
        urgency_boosts: Optional[Dict[str, float]] = None,
        elevation_boosts: Optional[Dict[str, float]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.board = board
        self.urgency_boosts = {**DEFAULT_URGENCY_BOOSTS, **(urgency_boosts or {})}
        self.elevation_boosts = {**DEFAULT_ELEVATION_BOOSTS, **(elevation_boosts or {})}
        self.clock = clock

    def urgency_boost(self, urgency: Urgency) -> float:
        return self.urgency_boosts.get(urgency.value, 0.0)

    def elevation_boost(self, organ: OrganType, region: Optional[str], now: Optional[datetime] = None) -> float:
        now = now or self.clock()
        active = self.board.active(organ, region, now)
        if not active:
            return 0.0
        return max(self.elevation_boosts.get(e.level.value, 0.0) for e in active)

    def boost_for(self, recipient: Recipient, organ: OrganType, now: Optional[datetime] = None) -> float:
        """Urgency boost plus the strongest active elevation for (organ, region)."""
        return self.urgency_boost(recipient.urgency) + self.elevation_boost(organ, recipient.region, now)
