"""
User Segments Router
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from usersegments.api.deps import get_db, with_deadline
from usersegments.modules.assignments.service import AssignmentEngine
from usersegments.schemas.segment import (
    UpdateUserSegmentsRequest,
    UpdateUserSegmentsResponse,
    UserSegmentsRequest,
    UserSegmentsResponse,
)

router = APIRouter(tags=["User Segments"])


@router.post("/update_user_segments", response_model=UpdateUserSegmentsResponse)
@with_deadline
async def update_user_segments(
    payload: UpdateUserSegmentsRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> UpdateUserSegmentsResponse:
    """
    Assign and unassign segments for a user in one transaction.

    Assigned segments expire after `ttl` days when `ttl` is non-zero.
    """
    assigned, unassigned = await AssignmentEngine(db).update_user_segments(
        user_id=payload.user_id,
        assign_slugs=payload.assign_segments,
        unassign_slugs=payload.unassign_segments,
        ttl_days=payload.ttl,
    )
    return UpdateUserSegmentsResponse(
        user_id=payload.user_id,
        assigned=assigned,
        unassigned=unassigned,
    )


@router.get("/get_user_segments", response_model=UserSegmentsResponse)
@with_deadline
async def get_user_segments(
    payload: UserSegmentsRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> UserSegmentsResponse:
    """Active segments of a user."""
    segments = await AssignmentEngine(db).get_user_segments(payload.user_id)
    return UserSegmentsResponse(user_id=payload.user_id, segments=segments)
