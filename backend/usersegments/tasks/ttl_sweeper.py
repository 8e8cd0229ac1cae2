"""
TTL Sweeper

Background task that deactivates user-segment relations whose unassign
deadline has passed. It runs on a fixed interval inside the API process and
shares the connection pool with request handlers.
"""

import asyncio
import time
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from usersegments.core.logging import get_logger, log_duration
from usersegments.db.base import utcnow
from usersegments.models.segment import UserSegmentRelation
from usersegments.monitoring.prometheus import (
    get_segment_relations_total,
    get_ttl_sweep_duration_seconds,
    get_ttl_sweeps_total,
)

logger = get_logger(__name__)


class TTLSweeper:
    """
    Periodically expires relations with date_unassigned in the past.

    A failed tick is logged and left for the next one; the interval is the
    retry backoff. stop() lets an in-flight tick finish.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval: float = 60.0,
    ):
        self.session_factory = session_factory
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="ttl-sweeper")
        logger.info("TTL sweeper started", extra={"interval_seconds": self.interval})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("TTL sweeper stopped")

    async def sweep_once(self) -> int:
        """
        Run one tick.

        Returns:
            Number of relations deactivated; 0 when the tick failed
        """
        start_time = time.time()
        try:
            with log_duration(logger, "TTL sweep"):
                async with self.session_factory() as session:
                    swept = await self._sweep(session)
        finally:
            get_ttl_sweep_duration_seconds().observe(time.time() - start_time)

        if swept:
            get_segment_relations_total().labels(operation="expired").inc(swept)
            logger.info("Expired relations deactivated", extra={"count": swept})
        return swept

    async def _sweep(self, session: AsyncSession) -> int:
        now = utcnow()

        try:
            result = await session.execute(
                select(UserSegmentRelation.id).where(
                    UserSegmentRelation.is_active.is_(True),
                    UserSegmentRelation.date_unassigned.is_not(None),
                    UserSegmentRelation.date_unassigned <= now,
                )
            )
            expired_ids: List[int] = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(
                "Reading expired relations failed, retrying next tick",
                exc_info=True,
                extra={"error": str(e)}
            )
            await self._rollback(session)
            get_ttl_sweeps_total().labels(outcome="read_failed").inc()
            return 0

        if not expired_ids:
            await session.commit()
            get_ttl_sweeps_total().labels(outcome="success").inc()
            return 0

        deactivated = 0
        for position, relation_id in enumerate(expired_ids):
            try:
                result = await session.execute(
                    update(UserSegmentRelation)
                    .where(
                        UserSegmentRelation.id == relation_id,
                        UserSegmentRelation.is_active.is_(True),
                    )
                    .values(is_active=False)
                    .execution_options(synchronize_session=False)
                )
                deactivated += result.rowcount or 0
            except SQLAlchemyError as e:
                logger.warning(
                    "Expiring relation failed, skipping the rest of this tick",
                    exc_info=True,
                    extra={
                        "relation_id": relation_id,
                        "skipped": len(expired_ids) - position,
                        "error": str(e),
                    }
                )
                await self._rollback(session)
                get_ttl_sweeps_total().labels(outcome="update_failed").inc()
                return 0

        try:
            await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Committing TTL sweep failed, retrying next tick",
                exc_info=True,
                extra={"error": str(e), "pending": len(expired_ids)}
            )
            await self._rollback(session)
            get_ttl_sweeps_total().labels(outcome="commit_failed").inc()
            return 0

        get_ttl_sweeps_total().labels(outcome="success").inc()
        return deactivated

    async def _rollback(self, session: AsyncSession) -> None:
        try:
            await session.rollback()
        except SQLAlchemyError as e:
            logger.error(
                "TTL sweep rollback failed",
                exc_info=True,
                extra={"error": str(e)}
            )

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(
                    "TTL sweep tick crashed, retrying next tick",
                    exc_info=True,
                    extra={"error": str(e)}
                )
                get_ttl_sweeps_total().labels(outcome="error").inc()

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
