"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied at the include_router level using FastAPI's
dependencies parameter. This protects all routes in each router
without modifying individual handlers. Health is open; admin routes
additionally require an admin role.
"""

from fastapi import APIRouter, Depends

from kephale.api.admin import router as admin_router
from kephale.api.calls import router as calls_router
from kephale.api.health import router as health_router
from kephale.api.presence import router as presence_router
from kephale.api.push import router as push_router
from kephale.api.realtime import router as realtime_router
from kephale.auth.dependencies import get_current_user, require_admin

# All protected routers require authentication
_auth = [Depends(get_current_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes — no auth required
api_router.include_router(health_router, tags=["health"])

# Protected routes — require a valid JWT
api_router.include_router(presence_router, tags=["presence"], dependencies=_auth)
api_router.include_router(calls_router, tags=["calls"], dependencies=_auth)
api_router.include_router(realtime_router, tags=["realtime"], dependencies=_auth)
api_router.include_router(push_router, tags=["push"], dependencies=_auth)
api_router.include_router(
    admin_router, tags=["admin"], dependencies=[Depends(require_admin)]
)
