"""
SQLAlchemy Base Module

This module provides the declarative base for SQLAlchemy models with
naming conventions for consistent constraint and index names.
"""

from datetime import datetime, UTC
from typing import Any, Dict

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

# Naming convention for constraints and indices
convention: Dict[str, Any] = {
    "ix": "ix_%(column_0_label)s",  # Index
    "uq": "uq_%(table_name)s_%(column_0_name)s",  # Unique constraint
    "ck": "ck_%(table_name)s_%(constraint_name)s",  # Check constraint
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",  # Foreign key
    "pk": "pk_%(table_name)s"  # Primary key
}

metadata = MetaData(naming_convention=convention)


class Base(DeclarativeBase):
    """Base class for all database models."""

    metadata = metadata


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in every table."""
    return datetime.now(UTC).replace(tzinfo=None)
