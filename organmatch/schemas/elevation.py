from pydantic import BaseModel
from typing import Optional
from datetime import datetime
import enum

from organmatch.schemas.donor import OrganType


class ElevationLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EmergencyElevation(BaseModel):
    """Priority signal from an approved emergency proposal."""
    organ: OrganType
    region: Optional[str] = None  # None applies to every region
    level: ElevationLevel
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at

    def applies_to(self, organ: OrganType, region: Optional[str]) -> bool:
        if organ != self.organ:
            return False
        return self.region is None or self.region == region
