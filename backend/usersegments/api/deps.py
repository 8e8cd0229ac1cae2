"""
API Dependencies

Database session and settings dependencies, and the request deadline
decorator shared by the routers.
"""

import asyncio
from functools import wraps
from typing import AsyncGenerator, Callable, Coroutine, ParamSpec, TypeVar

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from usersegments.core.exceptions import RequestTimeoutError
from usersegments.core.logging import get_logger
from usersegments.core.settings import AppSettings
from usersegments.db.session import Database

logger = get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for database sessions.

    Example:
        ```python
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
        ```
    """
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session


def get_app_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def with_deadline(func: Callable[P, Coroutine[None, None, R]]) -> Callable[P, Coroutine[None, None, R]]:
    """
    Cancel the endpoint once APP_REQUEST_TIMEOUT elapses.

    Cancellation rolls back any open transaction. The endpoint must accept a
    `request: Request` parameter.
    """
    @wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        request: Request = kwargs.get("request")
        if not request:
            raise ValueError("Request object not found in kwargs")

        timeout = request.app.state.settings.app.REQUEST_TIMEOUT
        try:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.error(
                "Request deadline exceeded",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "timeout_seconds": timeout,
                }
            )
            raise RequestTimeoutError(extra={"timeout_seconds": timeout}) from e

    return wrapper
