from fastapi import APIRouter, Depends, Query, Response, status
from typing import Optional
import logging

from organmatch.api.deps import get_engine
from organmatch.core.exceptions import NotFoundError
from organmatch.schemas.api import CandidateResponse, RankingResponse
from organmatch.schemas.match import Match
from organmatch.services.engine import MatchingEngine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{recipient_id}/candidates", response_model=RankingResponse)
async def recipient_candidates(
    recipient_id: str,
    top_n: Optional[int] = Query(None, ge=1, le=50),
    engine: MatchingEngine = Depends(get_engine),
):
    """Ranked donors for a waiting recipient, without creating anything."""
    recipient = await engine.registry.get_recipient(recipient_id)
    if recipient is None:
        raise NotFoundError(f"Recipient {recipient_id} not found")
    ranking = await engine.ranker.rank_for_recipient(recipient, top_n=top_n)
    return RankingResponse(
        organ=ranking.organ,
        candidates=[CandidateResponse.from_candidate(c) for c in ranking.candidates],
        skipped=ranking.skipped,
    )


@router.post("/{recipient_id}/matches", response_model=Match, status_code=status.HTTP_201_CREATED)
async def propose_match(recipient_id: str, engine: MatchingEngine = Depends(get_engine)):
    """Create a pending match with the best free donor; 204 when nobody qualifies."""
    match = await engine.lifecycle.propose_for_recipient(recipient_id)
    if match is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return match
