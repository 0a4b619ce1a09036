"""Chat routes: cached chat list and immediate sends."""

from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter()


class SendMessageRequest(BaseModel):
    content: str = ""


@router.get("/chats")
async def list_chats(request: Request):
    """Most recent chats (503 until the session is ready)."""
    service = request.app.state.service
    return {"chats": service.list_conversations()}


@router.post("/chats/{chat_id}/messages")
async def send_message(chat_id: str, req: SendMessageRequest, request: Request):
    """Send a text message right now."""
    service = request.app.state.service
    record = await service.send_message(chat_id, req.content)
    return {"success": True, "message": record.to_dict()}
