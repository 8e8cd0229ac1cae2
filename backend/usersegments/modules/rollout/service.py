"""
Auto-Rollout Sampler

Rolls a segment out to a percentage of the active user population by
assigning it to a uniformly random sample of the users who lack it.
"""

from typing import List

from sqlalchemy import and_, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from usersegments.core.exceptions import InvalidInputError
from usersegments.core.logging import get_logger
from usersegments.db.session import store_errors
from usersegments.models.segment import UserSegmentRelation
from usersegments.models.user import User
from usersegments.modules.assignments.service import AssignmentEngine
from usersegments.modules.segments.service import SegmentStore, normalize_slug

logger = get_logger(__name__)

MIN_FRACTION = 1
MAX_FRACTION = 100


def sample_size(active_users: int, fraction: int) -> int:
    """ceil(active_users * fraction / 100) in integer arithmetic."""
    return -(-active_users * fraction // 100)


class AutoRolloutSampler:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.segments = SegmentStore(db)
        self.assignments = AssignmentEngine(db)

    async def auto_assign(
        self,
        fraction: int,
        segment_slug: str,
        ttl_days: int = 0,
    ) -> List[int]:
        """
        Assign the segment to `fraction` percent of the active users.

        The sample is drawn from active users without an active relation to
        the segment. When fewer are eligible, all of them are assigned.

        Returns:
            Ids of the users the segment was assigned to

        Raises:
            InvalidInputError: If fraction is outside [1, 100]
            NotFoundError: If the segment does not exist or is inactive
        """
        if fraction < MIN_FRACTION or fraction > MAX_FRACTION:
            logger.warning("Invalid rollout fraction", extra={"fraction": fraction})
            raise InvalidInputError(
                f"Fraction must be between {MIN_FRACTION} and {MAX_FRACTION}",
                extra={"fraction": fraction}
            )

        slug = normalize_slug(segment_slug)
        segment_id = (await self.segments.resolve_ids([slug], active_only=True))[0]

        active_users = await self.count_active_users()
        size = sample_size(active_users, fraction)
        user_ids = await self._sample(size, segment_id)

        if user_ids:
            await self.assignments.assign(user_ids, [slug], ttl_days)

        logger.info(
            "Segment rolled out",
            extra={
                "segment_slug": slug,
                "fraction": fraction,
                "active_users": active_users,
                "sample_size": size,
                "assigned": len(user_ids),
            }
        )
        return user_ids

    async def count_active_users(self) -> int:
        with store_errors("count active users"):
            result = await self.db.execute(
                select(func.count(User.id)).where(User.is_active.is_(True))
            )
        return result.scalar_one()

    async def sample_users_without_segment(self, n: int, segment_slug: str) -> List[int]:
        """
        Up to n random active users without an active relation to the segment.
        """
        slug = normalize_slug(segment_slug)
        segment_id = (await self.segments.resolve_ids([slug]))[0]
        return await self._sample(n, segment_id)

    async def _sample(self, n: int, segment_id: int) -> List[int]:
        if n <= 0:
            return []

        has_segment = exists().where(
            and_(
                UserSegmentRelation.user_id == User.id,
                UserSegmentRelation.segment_id == segment_id,
                UserSegmentRelation.is_active.is_(True),
            )
        )
        stmt = (
            select(User.id)
            .where(User.is_active.is_(True), ~has_segment)
            .order_by(func.random())
            .limit(n)
        )
        with store_errors("sample users"):
            result = await self.db.execute(stmt)
        return list(result.scalars().all())
