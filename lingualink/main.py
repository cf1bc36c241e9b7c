"""FastAPI application hosting the signaling relay."""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from .core.config import settings
from .routers import rtc

app = FastAPI(title="LinguaLink Signaling Relay", version="0.1.0")

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(rtc.router, prefix="/api/rtc", tags=["rtc"])


@app.get("/api/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Basic liveness probe."""

    return {"status": "ok"}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD requests for uptime monitors."""

    return Response(status_code=200)
