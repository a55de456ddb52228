from fastapi import APIRouter, Depends
from typing import List
import uuid

from organmatch.api.deps import get_engine
from organmatch.schemas.notification import Notification
from organmatch.services.engine import MatchingEngine

router = APIRouter()


@router.get("/", response_model=List[Notification])
async def list_notifications(
    address: str,
    unread_only: bool = False,
    engine: MatchingEngine = Depends(get_engine),
):
    """A party's notifications by address (patient, donor or hospital id)."""
    return await engine.dispatcher.inbox(address, unread_only=unread_only)


@router.post("/{notification_id}/read", response_model=Notification)
async def mark_notification_read(notification_id: uuid.UUID, engine: MatchingEngine = Depends(get_engine)):
    return await engine.dispatcher.mark_read(notification_id)
