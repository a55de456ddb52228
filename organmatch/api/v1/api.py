from fastapi import APIRouter
from organmatch.api.v1.endpoints import deaths, elevations, matches, notifications, recipients

api_router = APIRouter()

api_router.include_router(deaths.router, prefix="/deaths", tags=["deaths"])
api_router.include_router(matches.router, prefix="/matches", tags=["matches"])
api_router.include_router(recipients.router, prefix="/recipients", tags=["recipients"])
api_router.include_router(elevations.router, prefix="/elevations", tags=["elevations"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
