"""FastAPI application factory.

The app owns one WhatschedService for its lifetime: the lifespan hook
starts it (store load, background loops, session boot) and stops it on
shutdown. Core exceptions map to HTTP errors in one place:

    InvalidRequestError   -> 400
    SessionNotReadyError  -> 503
    ProviderError         -> 502
    StoreError            -> 500
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from whatsched import __version__
from whatsched.errors import (
    InvalidRequestError,
    ProviderError,
    SessionNotReadyError,
    StoreError,
)
from whatsched.service import WhatschedService, get_service
from whatsched.web.routes import chats, scheduled, session

logger = logging.getLogger(__name__)


def create_app(service: WhatschedService | None = None) -> FastAPI:
    """Build the FastAPI app around `service` (global service if None)."""
    svc = service or get_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await svc.start()
        try:
            yield
        finally:
            await svc.stop()

    app = FastAPI(title="whatsched", version=__version__, lifespan=lifespan)
    app.state.service = svc

    app.add_middleware(
        CORSMiddleware,
        allow_origins=svc.settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
        allow_credentials="*" not in svc.settings.cors_origins,
    )

    @app.exception_handler(InvalidRequestError)
    async def _invalid(request: Request, exc: InvalidRequestError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(SessionNotReadyError)
    async def _not_ready(request: Request, exc: SessionNotReadyError):
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(ProviderError)
    async def _provider(request: Request, exc: ProviderError):
        logger.error(f"Error sending message: {exc}")
        return JSONResponse(
            status_code=502,
            content={"error": str(exc), "transient": exc.transient},
        )

    @app.exception_handler(StoreError)
    async def _store(request: Request, exc: StoreError):
        logger.error(f"Store failure: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    app.include_router(session.router, prefix="/api")
    app.include_router(chats.router, prefix="/api")
    app.include_router(scheduled.router, prefix="/api")
    app.add_api_websocket_route("/ws", session.events)

    return app
