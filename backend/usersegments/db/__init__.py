"""
Database Package

This package contains database connection and session management.
"""

from usersegments.db.base import Base, utcnow
from usersegments.db.session import Database, store_errors, transaction

__all__ = [
    "Base",
    "Database",
    "store_errors",
    "transaction",
    "utcnow",
]
