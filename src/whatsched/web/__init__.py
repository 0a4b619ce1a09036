"""HTTP + WebSocket front end for whatsched."""

from whatsched.web.server import create_app

__all__ = ["create_app"]
