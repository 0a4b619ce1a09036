"""Scheduled message routes."""

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

router = APIRouter()


class ScheduleRequest(BaseModel):
    chatId: str = ""
    content: str = ""
    sendAt: str = ""  # ISO-8601, UTC if no offset


@router.post("/scheduled")
async def schedule_message(req: ScheduleRequest, request: Request):
    """Queue a message for delivery at sendAt."""
    service = request.app.state.service
    entry = await service.schedule_message(req.chatId, req.content, req.sendAt)
    return {"success": True, "scheduled": entry.to_dict()}


@router.get("/scheduled")
async def list_scheduled(
    request: Request,
    pending: bool = Query(False, description="Only entries not yet sent"),
):
    service = request.app.state.service
    entries = await service.list_scheduled(pending_only=pending)
    return {"scheduled": [e.to_dict() for e in entries]}
