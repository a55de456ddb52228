from fastapi import Request

from organmatch.services.engine import MatchingEngine


def get_engine(request: Request) -> MatchingEngine:
    """The engine built by the application lifespan."""
    return request.app.state.engine
