"""API routes."""

from fastapi import APIRouter

from commerce_engine.routes import admin, clicks, oauth, webhooks

api_router = APIRouter()

# Platform webhooks (signed)
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

# Click tracking and product redirect
api_router.include_router(clicks.track_router, prefix="/v1/track", tags=["clicks"])
api_router.include_router(clicks.redirect_router, prefix="/r", tags=["redirect"])

# Admin endpoints (sync, maintenance)
api_router.include_router(admin.router, prefix="/v1/admin", tags=["admin"])

# OAuth connect/join/callback and connection state (/{platform}/...)
api_router.include_router(oauth.router, tags=["oauth"])
