"""
Segment Schemas

Request and response models for the segment and user-segment endpoints.
Each endpoint has its own request model declaring only the fields it uses.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from usersegments.models.segment import MAX_TTL_DAYS


class SegmentSlugMixin(BaseModel):
    segment_slug: str = Field(..., min_length=1, max_length=255)

    @field_validator("segment_slug")
    @classmethod
    def strip_slug(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("segment_slug must not be empty")
        return v


class CreateSegmentRequest(SegmentSlugMixin):
    """Body of POST /api/create_segment."""

    # Percentage of active users to roll the new segment out to
    fraction: Optional[int] = Field(default=None, ge=1, le=100)
    ttl: int = Field(default=0, ge=0, le=MAX_TTL_DAYS)


class DeleteSegmentRequest(SegmentSlugMixin):
    """Body of DELETE /api/delete_segment."""


class UpdateUserSegmentsRequest(BaseModel):
    """Body of POST /api/update_user_segments."""

    user_id: int = Field(..., ge=1)
    assign_segments: List[str] = Field(default_factory=list)
    unassign_segments: List[str] = Field(default_factory=list)
    ttl: int = Field(default=0, ge=0, le=MAX_TTL_DAYS)


class UserSegmentsRequest(BaseModel):
    """Body of GET /api/get_user_segments."""

    user_id: int = Field(..., ge=1)


class SegmentResponse(BaseModel):
    segment_slug: str
    is_active: bool
    assigned_users: int = 0


class UpdateUserSegmentsResponse(BaseModel):
    user_id: int
    assigned: int
    unassigned: int


class UserSegmentsResponse(BaseModel):
    user_id: int
    segments: List[str]
