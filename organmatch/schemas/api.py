from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from organmatch.schemas.donor import OrganType
from organmatch.schemas.match import MatchCandidate, ScoreBreakdown, SkippedCandidate


class DeathConfirmationRequest(BaseModel):
    donor_id: str
    certificate_hash: str
    signature: str
    deadline_seconds: Optional[float] = Field(None, gt=0)


class MatchActionRequest(BaseModel):
    actor: str = Field(..., min_length=1)


class MatchRejectRequest(MatchActionRequest):
    reason: Optional[str] = None


class ElevationCreate(BaseModel):
    organ: OrganType
    region: Optional[str] = None
    level: str
    expires_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(None, gt=0)


class CandidateResponse(BaseModel):
    donor_id: str
    recipient_id: str
    organ: OrganType
    score: int
    breakdown: ScoreBreakdown
    boost: float
    boosted_score: float
    reputation: int
    distance_km: Optional[float] = None

    @classmethod
    def from_candidate(cls, candidate: MatchCandidate) -> "CandidateResponse":
        return cls(
            donor_id=candidate.donor.id,
            recipient_id=candidate.recipient.id,
            organ=candidate.organ,
            score=candidate.score.total,
            breakdown=candidate.score.breakdown,
            boost=candidate.boost,
            boosted_score=candidate.boosted_score,
            reputation=candidate.reputation,
            distance_km=candidate.distance_km,
        )


class RankingResponse(BaseModel):
    organ: OrganType
    candidates: List[CandidateResponse]
    skipped: List[SkippedCandidate]
