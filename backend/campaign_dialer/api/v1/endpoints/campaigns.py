"""
Campaigns API
Operator actions on running campaigns and their answered calls
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator

from campaign_dialer.api.v1.dependencies import get_campaign_service
from campaign_dialer.domain.exceptions import (
    CampaignNotFoundError,
    DialerError,
    InvalidHandlingError,
    SwitchError,
    TaskNotFoundError,
)
from campaign_dialer.domain.models.campaign_task import HandledBy
from campaign_dialer.domain.services.campaign_service import CampaignService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


class ContactCreate(BaseModel):
    """One contact to dial"""
    number: str = Field(..., description="Number to dial")
    name: Optional[str] = Field(None, max_length=200)


class ContactsAddRequest(BaseModel):
    contacts: List[ContactCreate]
    max_attempts: int = Field(default=3, ge=1, le=20)


class ScheduleRequest(BaseModel):
    start_time: datetime


class ResolveRequest(BaseModel):
    """How to handle an answered call"""
    handling: HandledBy
    extension: Optional[str] = None
    flow_id: Optional[str] = None

    @field_validator("extension", "flow_id")
    @classmethod
    def strip_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class AcceptRequest(BaseModel):
    extension: str = Field(..., min_length=1)


def _raise_http(e: Exception) -> None:
    """Map engine errors to HTTP errors"""
    if isinstance(e, (CampaignNotFoundError, TaskNotFoundError)):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidHandlingError):
        raise HTTPException(status_code=400, detail=str(e))
    if isinstance(e, SwitchError):
        raise HTTPException(status_code=502, detail=str(e))
    raise HTTPException(status_code=500, detail=str(e))


@router.post("/{campaign_id}/start")
async def start_campaign(campaign_id: str, service: CampaignService = Depends(get_campaign_service)):
    """Activate the campaign and start dialing its pending contacts"""
    try:
        campaign = await service.start_campaign(campaign_id)
        return {"message": f"Campaign {campaign.name} started", "campaign": campaign.model_dump(mode="json")}
    except DialerError as e:
        _raise_http(e)


@router.post("/{campaign_id}/schedule")
async def schedule_campaign(
    campaign_id: str,
    request: ScheduleRequest,
    service: CampaignService = Depends(get_campaign_service)
):
    try:
        campaign = await service.schedule_campaign(campaign_id, request.start_time)
        return {"campaign": campaign.model_dump(mode="json")}
    except DialerError as e:
        _raise_http(e)


@router.post("/{campaign_id}/pause")
async def pause_campaign(campaign_id: str, service: CampaignService = Depends(get_campaign_service)):
    try:
        campaign = await service.pause_campaign(campaign_id)
        return {"message": f"Campaign {campaign.name} paused", "campaign": campaign.model_dump(mode="json")}
    except DialerError as e:
        _raise_http(e)


@router.post("/{campaign_id}/stop")
async def stop_campaign(campaign_id: str, service: CampaignService = Depends(get_campaign_service)):
    """
    Stop the campaign.

    Pending tasks are cancelled; calls already in progress are left to finish.
    """
    try:
        result = await service.stop_campaign(campaign_id)
        return {
            "message": f"Campaign {result['campaign'].name} stopped",
            "cancelled": result["cancelled"],
        }
    except DialerError as e:
        _raise_http(e)


@router.post("/{campaign_id}/contacts")
async def add_contacts(
    campaign_id: str,
    request: ContactsAddRequest,
    service: CampaignService = Depends(get_campaign_service)
):
    try:
        tasks = await service.add_contacts(
            campaign_id,
            [c.model_dump() for c in request.contacts],
            max_attempts=request.max_attempts,
        )
        return {"added": len(tasks), "task_ids": [t.id for t in tasks]}
    except DialerError as e:
        _raise_http(e)


@router.delete("/{campaign_id}/contacts")
async def clear_contacts(campaign_id: str, service: CampaignService = Depends(get_campaign_service)):
    try:
        cleared = await service.clear_pending_contacts(campaign_id)
        return {"cleared": cleared}
    except DialerError as e:
        _raise_http(e)


@router.post("/{campaign_id}/retry-failed")
async def retry_failed(campaign_id: str, service: CampaignService = Depends(get_campaign_service)):
    try:
        count = await service.retry_failed(campaign_id)
        return {"retried": count}
    except DialerError as e:
        _raise_http(e)


@router.get("/{campaign_id}/stats")
async def get_statistics(campaign_id: str, service: CampaignService = Depends(get_campaign_service)):
    try:
        return await service.get_statistics(campaign_id)
    except DialerError as e:
        _raise_http(e)


@router.get("/{campaign_id}/report")
async def export_report(campaign_id: str, service: CampaignService = Depends(get_campaign_service)):
    try:
        return await service.export_report(campaign_id)
    except DialerError as e:
        _raise_http(e)


@router.post("/tasks/{task_id}/resolve")
async def resolve_answered_call(
    task_id: str,
    request: ResolveRequest,
    service: CampaignService = Depends(get_campaign_service)
):
    """Route an answered call to a human, the AI flow, or the agent queue"""
    try:
        task = await service.resolve_answered(
            task_id, request.handling, extension=request.extension, flow_id=request.flow_id
        )
        return {"task": task.to_record()}
    except (DialerError, SwitchError) as e:
        _raise_http(e)


@router.post("/tasks/{task_id}/accept")
async def accept_queued_call(
    task_id: str,
    request: AcceptRequest,
    service: CampaignService = Depends(get_campaign_service)
):
    try:
        task = await service.accept_queued_call(task_id, request.extension)
        return {"task": task.to_record()}
    except (DialerError, SwitchError) as e:
        _raise_http(e)


@router.post("/tasks/{task_id}/hangup")
async def force_hangup(task_id: str, service: CampaignService = Depends(get_campaign_service)):
    try:
        task = await service.force_hangup(task_id)
        return {"task": task.to_record()}
    except DialerError as e:
        _raise_http(e)
