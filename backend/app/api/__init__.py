############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# __init__.py: API endpoints package and router configuration
#
############################################################

"""API endpoints for SandboxRelay."""

from fastapi import APIRouter

from backend.app.api.credits_api import router as credits_router
from backend.app.api.health import router as health_router
from backend.app.api.internal_api import router as internal_router
from backend.app.api.machine_api import router as machine_router
from backend.app.api.memories_api import router as memories_router
from backend.app.api.messages_api import router as messages_router
from backend.app.api.ws_chat import router as ws_router

# Create main API router
api_router = APIRouter()

# Include all sub-routers
api_router.include_router(health_router)
api_router.include_router(machine_router, prefix="/api/machine", tags=["machine"])
api_router.include_router(credits_router, prefix="/api/credits", tags=["credits"])
api_router.include_router(messages_router, prefix="/api/messages", tags=["messages"])
api_router.include_router(memories_router, prefix="/api/memories", tags=["memories"])
api_router.include_router(internal_router, prefix="/api/internal", tags=["internal"])
api_router.include_router(ws_router)

__all__ = ["api_router"]
