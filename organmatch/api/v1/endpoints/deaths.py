from fastapi import APIRouter, Depends
import logging

from organmatch.api.deps import get_engine
from organmatch.schemas.api import DeathConfirmationRequest
from organmatch.schemas.match import DeathConfirmationSummary
from organmatch.services.engine import MatchingEngine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/confirm", response_model=DeathConfirmationSummary)
async def confirm_death(
    request: DeathConfirmationRequest,
    engine: MatchingEngine = Depends(get_engine),
):
    """Confirm a donor's death with a hospital attestation and run the triggered match search."""
    return await engine.deaths.confirm_death(
        request.donor_id,
        request.certificate_hash,
        request.signature,
        deadline_seconds=request.deadline_seconds,
    )
