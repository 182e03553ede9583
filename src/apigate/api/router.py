"""Master API router mounted at /api/v1."""

from fastapi import APIRouter, Depends

from apigate.api.routes import events, health, me, webhooks
from apigate.dependencies import get_current_client

_protected = [Depends(get_current_client)]

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(me.router, dependencies=_protected)
api_router.include_router(events.router, dependencies=_protected)
api_router.include_router(webhooks.router, dependencies=_protected)
