from fastapi import APIRouter, Depends
from typing import List, Optional
import logging
import uuid

from organmatch.api.deps import get_engine
from organmatch.schemas.api import MatchActionRequest, MatchRejectRequest
from organmatch.schemas.match import AnonymizedMatch, Match, MatchState
from organmatch.schemas.notification import Notification
from organmatch.services.engine import MatchingEngine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=List[Match])
async def list_matches(
    state: Optional[MatchState] = None,
    donor_id: Optional[str] = None,
    recipient_id: Optional[str] = None,
    engine: MatchingEngine = Depends(get_engine),
):
    return await engine.lifecycle.list_matches(state=state, donor_id=donor_id, recipient_id=recipient_id)


@router.get("/anonymized", response_model=List[AnonymizedMatch])
async def anonymized_matches(engine: MatchingEngine = Depends(get_engine)):
    """Match statistics without donor or recipient identities."""
    return await engine.lifecycle.anonymized_matches()


@router.get("/{match_id}", response_model=Match)
async def get_match(match_id: uuid.UUID, engine: MatchingEngine = Depends(get_engine)):
    return await engine.lifecycle.get(match_id)


@router.post("/{match_id}/accept", response_model=Match)
async def accept_match(
    match_id: uuid.UUID,
    request: MatchActionRequest,
    engine: MatchingEngine = Depends(get_engine),
):
    return await engine.lifecycle.accept(match_id, request.actor)


@router.post("/{match_id}/reject", response_model=Match)
async def reject_match(
    match_id: uuid.UUID,
    request: MatchRejectRequest,
    engine: MatchingEngine = Depends(get_engine),
):
    """Reject a pending match or withdraw an accepted one (reason required)."""
    return await engine.lifecycle.reject(match_id, request.actor, request.reason)


@router.post("/{match_id}/complete", response_model=Match)
async def complete_match(
    match_id: uuid.UUID,
    request: MatchActionRequest,
    engine: MatchingEngine = Depends(get_engine),
):
    return await engine.lifecycle.complete(match_id, request.actor)


@router.get("/{match_id}/notifications", response_model=List[Notification])
async def match_notifications(match_id: uuid.UUID, engine: MatchingEngine = Depends(get_engine)):
    await engine.lifecycle.get(match_id)
    return await engine.notification_log.for_match(match_id)
