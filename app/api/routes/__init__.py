"""API routes."""

from fastapi import APIRouter

from app.api.routes import automation_rules, conversations, media, webhooks

api_router = APIRouter()

# Provider-facing routes (signature checked per channel)
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(media.router, prefix="/media", tags=["media"])

# Operator routes
api_router.include_router(automation_rules.router, prefix="/automation/rules", tags=["automation"])
api_router.include_router(conversations.router, prefix="/conversations", tags=["conversations"])
