"""API route aggregation.

All routers registered here get mounted in main.py.

Health is open. Both internal routers are protected at include_router
level, so a caller without the credential gets 401 before its request
body is validated or the store is touched.
"""

from fastapi import APIRouter, Depends

from threadqueue.api.health import router as health_router
from threadqueue.api.internal import router as internal_router
from threadqueue.api.threads import router as threads_router
from threadqueue.auth.dependencies import require_internal_caller

_internal = [Depends(require_internal_caller)]

api_router = APIRouter(prefix="/api/v1")

# Open routes
api_router.include_router(health_router, tags=["health"])

# Internal routes: require the shared internal credential
api_router.include_router(internal_router, tags=["dispatch"], dependencies=_internal)
api_router.include_router(threads_router, tags=["threads"], dependencies=_internal)
