"""Routes package for the whatsched API."""

from whatsched.web.routes import chats, scheduled, session

__all__ = ["chats", "scheduled", "session"]
