"""
Segment Router

Create and delete segments. Creating a segment can also roll it out to a
percentage of the active users.
"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from usersegments.api.deps import get_db, with_deadline
from usersegments.modules.rollout.service import AutoRolloutSampler
from usersegments.modules.segments.service import SegmentStore
from usersegments.schemas.segment import (
    CreateSegmentRequest,
    DeleteSegmentRequest,
    SegmentResponse,
)

router = APIRouter(tags=["Segments"])


@router.post(
    "/create_segment",
    status_code=status.HTTP_201_CREATED,
    response_model=SegmentResponse,
)
@with_deadline
async def create_segment(
    payload: CreateSegmentRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> SegmentResponse:
    """
    Create a segment, or reactivate it if the slug already exists.

    With `fraction` set, the segment is also assigned to that percentage of
    active users, expiring after `ttl` days when `ttl` is non-zero.
    """
    segment = await SegmentStore(db).create_or_reactivate(payload.segment_slug)

    assigned = []
    if payload.fraction:
        assigned = await AutoRolloutSampler(db).auto_assign(
            fraction=payload.fraction,
            segment_slug=segment.slug,
            ttl_days=payload.ttl,
        )

    return SegmentResponse(
        segment_slug=segment.slug,
        is_active=segment.is_active,
        assigned_users=len(assigned),
    )


@router.delete("/delete_segment", response_model=SegmentResponse)
@with_deadline
async def delete_segment(
    payload: DeleteSegmentRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> SegmentResponse:
    """
    Deactivate a segment and unassign it from every user.
    """
    await SegmentStore(db).deactivate(payload.segment_slug)
    return SegmentResponse(segment_slug=payload.segment_slug, is_active=False)
