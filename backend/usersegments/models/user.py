"""
User model.

Users are created and managed by another service; this service only reads
their ids and active flag.
"""

from sqlalchemy import Boolean, Integer
from sqlalchemy.orm import Mapped, mapped_column

from usersegments.db.base import Base


class User(Base):
    """Read-only view of the externally owned users table."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        index=True
    )

    def __repr__(self) -> str:
        return f"<User {self.id} ({'active' if self.is_active else 'inactive'})>"
