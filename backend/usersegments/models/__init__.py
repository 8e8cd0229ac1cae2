"""
Models Package

This package contains all SQLAlchemy models for the application.
Importing them here registers them with the shared metadata.
"""

from .user import User
from .segment import Segment, UserSegmentRelation

__all__ = [
    "User",
    "Segment",
    "UserSegmentRelation",
]
