"""
API Router

Collects the module routers under the /api prefix.
"""

from fastapi import APIRouter

from usersegments.modules.assignments import router as assignments
from usersegments.modules.history import router as history
from usersegments.modules.segments import router as segments

api_router = APIRouter(prefix="/api")
api_router.include_router(segments.router)
api_router.include_router(assignments.router)
api_router.include_router(history.router)
