"""
Segment models.

This module defines segments and the user-segment relation table, which is
both the live membership state and the audit trail for history reports.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from usersegments.db.base import Base, utcnow

# Upper bound for a relation TTL, in days (100 years)
MAX_TTL_DAYS = 36500


class Segment(Base):
    """Named cohort tag. Deleting a segment only clears is_active."""

    __tablename__ = "segments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true")
    )

    def __repr__(self) -> str:
        return f"<Segment {self.slug} ({'active' if self.is_active else 'inactive'})>"


class UserSegmentRelation(Base):
    """
    Membership of a user in a segment.

    Rows are never deleted. At most one row per (user_id, segment_id) may be
    active; the partial unique index enforces it in the database.
    """

    __tablename__ = "user_segment_relation"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id"),
        nullable=False,
        index=True
    )
    segment_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("segments.id"),
        nullable=False,
        index=True
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true")
    )
    date_assigned: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow
    )
    # TTL deadline while active, actual unassign time once inactive
    date_unassigned: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True
    )

    __table_args__ = (
        Index(
            "uq_user_segment_relation_active_pair",
            "user_id",
            "segment_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
        Index(
            "ix_user_segment_relation_expiry",
            "is_active",
            "date_unassigned",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<UserSegmentRelation user={self.user_id} segment={self.segment_id} "
            f"({'active' if self.is_active else 'inactive'})>"
        )
