from fastapi import APIRouter, Depends, status
from datetime import datetime, timedelta, timezone
from typing import List
import logging

from organmatch.api.deps import get_engine
from organmatch.schemas.api import ElevationCreate
from organmatch.schemas.elevation import EmergencyElevation
from organmatch.services.emergency_priority import validate_level
from organmatch.services.engine import MatchingEngine

logger = logging.getLogger(__name__)
router = APIRouter()

DEFAULT_DURATION_MINUTES = 24 * 60


@router.post("/", response_model=EmergencyElevation, status_code=status.HTTP_201_CREATED)
async def create_elevation(request: ElevationCreate, engine: MatchingEngine = Depends(get_engine)):
    """Register an approved emergency elevation for an organ (and optionally a region)."""
    level = validate_level(request.level)
    expires_at = request.expires_at
    if expires_at is None:
        minutes = request.duration_minutes or DEFAULT_DURATION_MINUTES
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    elif expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    elevation = EmergencyElevation(
        organ=request.organ,
        region=request.region,
        level=level,
        expires_at=expires_at,
    )
    return engine.elevations.add(elevation)


@router.get("/", response_model=List[EmergencyElevation])
async def list_elevations(engine: MatchingEngine = Depends(get_engine)):
    return engine.elevations.all()
