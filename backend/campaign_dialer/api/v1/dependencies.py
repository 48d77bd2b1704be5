"""
API Dependencies
Shared dependencies for reaching the dialing engine
"""
from fastapi import HTTPException, Request, status

from campaign_dialer.core.engine import DialerEngine
from campaign_dialer.domain.services.campaign_service import CampaignService


def get_engine(request: Request) -> DialerEngine:
    """
    Get the engine attached to the application at startup.

    Raises:
        HTTPException: 503 if the engine has not been started
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dialer engine is not running",
        )
    return engine


def get_campaign_service(request: Request) -> CampaignService:
    return get_engine(request).service
