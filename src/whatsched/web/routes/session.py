"""Session routes: health, explicit restart, and the event WebSocket."""

from fastapi import APIRouter, Request, WebSocket

from whatsched.broadcast import WebSocketHub

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """Connection status, whether a QR code is waiting to be scanned."""
    return request.app.state.service.health()


@router.post("/session/restart")
async def restart_session(request: Request):
    """Re-run the session start sequence (the way out of a failed login)."""
    service = request.app.state.service
    await service.restart_session()
    return {"ok": True, "state": service.session.state.value}


async def events(ws: WebSocket):
    """Stream challenge-issued / status / ready / new-message events.

    A client connecting while a QR code is pending gets it immediately.
    """
    service = ws.app.state.service
    hub = service.broadcaster
    if not isinstance(hub, WebSocketHub):
        await ws.close(code=1011)
        return
    await hub.serve(ws, initial=service.initial_events())
