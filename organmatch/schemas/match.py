from pydantic import BaseModel, ConfigDict, Field, computed_field
from typing import Optional, List
from datetime import datetime
import enum
import uuid

from organmatch.schemas.donor import Donor, OrganType, Recipient


class MatchState(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (MatchState.REJECTED, MatchState.COMPLETED)


class ScoreBreakdown(BaseModel):
    blood_type: int
    age: int
    physical: int
    medical_history: int


class CompatibilityScore(BaseModel):
    total: int = Field(..., ge=0, le=100)
    breakdown: ScoreBreakdown


class MatchCandidate(BaseModel):
    """Ranking output; never persisted."""
    donor: Donor
    recipient: Recipient
    organ: OrganType
    score: CompatibilityScore
    boost: float = 0.0
    reputation: int = 0
    distance_km: Optional[float] = None

    @property
    def boosted_score(self) -> float:
        return self.score.total + self.boost


class SkippedCandidate(BaseModel):
    donor_id: Optional[str] = None
    recipient_id: Optional[str] = None
    reason: str


class Ranking(BaseModel):
    organ: OrganType
    candidates: List[MatchCandidate] = Field(default_factory=list)
    skipped: List[SkippedCandidate] = Field(default_factory=list)


class Match(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    donor_id: str
    recipient_id: str
    organ: OrganType
    score: int  # pre-boost compatibility total
    breakdown: ScoreBreakdown
    state: MatchState = MatchState.PENDING
    created_at: datetime
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    rejected_by: Optional[str] = None
    completed_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    version: int = 1
    settled: bool = True  # registry writes and ledger fact applied for `state`

    model_config = ConfigDict(from_attributes=True)


class AnonymizedMatch(BaseModel):
    """Match view without participant identities."""
    organ: OrganType
    state: MatchState
    score: int
    created_at: datetime
    closed_at: Optional[datetime] = None


class CandidateError(BaseModel):
    organ: OrganType
    recipient_id: Optional[str] = None
    error: str


class DeathConfirmationSummary(BaseModel):
    """Outcome of one death-confirmation batch."""
    donor_id: str
    confirmed_by: str
    already_confirmed: bool = False
    created: List[Match] = Field(default_factory=list)
    skipped: List[SkippedCandidate] = Field(default_factory=list)
    errors: List[CandidateError] = Field(default_factory=list)
    unprocessed_candidates: int = 0
    unprocessed_organs: List[OrganType] = Field(default_factory=list)
    deadline_exceeded: bool = False

    @computed_field
    @property
    def created_count(self) -> int:
        return len(self.created)
