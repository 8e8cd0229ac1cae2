"""
Assignment Engine

Assigns and unassigns segments to users. A (user, segment) pair never has
more than one active relation; assigning an already assigned pair is skipped
and the rest of the batch is still applied.
"""

from datetime import timedelta
from typing import Any, Dict, Iterable, List, Sequence, Set, Tuple

from sqlalchemy import insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from usersegments.core.exceptions import InvalidInputError, NotFoundError
from usersegments.core.logging import get_logger
from usersegments.db.base import utcnow
from usersegments.db.session import dialect_insert, store_errors, transaction
from usersegments.models.segment import MAX_TTL_DAYS, Segment, UserSegmentRelation
from usersegments.models.user import User
from usersegments.modules.segments.service import SegmentStore, normalize_slug
from usersegments.monitoring.prometheus import get_segment_relations_total

logger = get_logger(__name__)


def _unique(values: Iterable) -> list:
    return list(dict.fromkeys(values))


class AssignmentEngine:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.segments = SegmentStore(db)

    async def assign(
        self,
        user_ids: Sequence[int],
        segment_slugs: Sequence[str],
        ttl_days: int = 0,
    ) -> int:
        """
        Give every user every listed segment.

        Pairs that already hold an active relation are left untouched. With
        ttl_days > 0 the new relations expire that many calendar days after
        assignment; 0 means they never expire on their own.

        Returns:
            Number of relations created

        Raises:
            InvalidInputError: TTL out of range or empty slug
            NotFoundError: Unknown or inactive segment, unknown user
        """
        _validate_ttl(ttl_days)
        if not segment_slugs or not user_ids:
            return 0

        slugs = _unique(normalize_slug(slug) for slug in segment_slugs)
        user_ids = _unique(user_ids)
        segment_ids = await self.segments.resolve_ids(slugs, active_only=True)
        await self._ensure_users_exist(user_ids)

        async with transaction(self.db, "assign segments"):
            created = await self._insert_relations(user_ids, segment_ids, ttl_days)

        get_segment_relations_total().labels(operation="assigned").inc(created)
        logger.info(
            "Segments assigned",
            extra={
                "user_ids": user_ids,
                "segment_slugs": slugs,
                "ttl_days": ttl_days,
                "relations_created": created,
            }
        )
        return created

    async def unassign(
        self,
        user_ids: Sequence[int],
        segment_slugs: Sequence[str],
    ) -> int:
        """
        End the active relations between the users and the listed segments.

        Pairs without an active relation are ignored.

        Returns:
            Number of relations deactivated

        Raises:
            NotFoundError: Unknown segment slug
        """
        if not segment_slugs or not user_ids:
            return 0

        slugs = _unique(normalize_slug(slug) for slug in segment_slugs)
        user_ids = _unique(user_ids)
        segment_ids = await self.segments.resolve_ids(slugs)

        async with transaction(self.db, "unassign segments"):
            deactivated = await self._deactivate_relations(user_ids, segment_ids)

        get_segment_relations_total().labels(operation="unassigned").inc(deactivated)
        logger.info(
            "Segments unassigned",
            extra={
                "user_ids": user_ids,
                "segment_slugs": slugs,
                "relations_deactivated": deactivated,
            }
        )
        return deactivated

    async def update_user_segments(
        self,
        user_id: int,
        assign_slugs: Sequence[str],
        unassign_slugs: Sequence[str],
        ttl_days: int = 0,
    ) -> Tuple[int, int]:
        """
        Assign and unassign segments for one user in a single transaction.

        Every slug is resolved before anything is written, so a bad slug in
        either list leaves the user's segments unchanged. Assignments are
        applied first.

        Returns:
            (relations created, relations deactivated)
        """
        _validate_ttl(ttl_days)
        assign = _unique(normalize_slug(slug) for slug in assign_slugs)
        unassign = _unique(normalize_slug(slug) for slug in unassign_slugs)

        assign_ids = await self.segments.resolve_ids(assign, active_only=True)
        unassign_ids = await self.segments.resolve_ids(unassign)
        if assign_ids:
            await self._ensure_users_exist([user_id])

        async with transaction(self.db, "update user segments"):
            created = await self._insert_relations([user_id], assign_ids, ttl_days)
            deactivated = await self._deactivate_relations([user_id], unassign_ids)

        get_segment_relations_total().labels(operation="assigned").inc(created)
        get_segment_relations_total().labels(operation="unassigned").inc(deactivated)
        logger.info(
            "User segments updated",
            extra={
                "user_id": user_id,
                "assign_segments": assign,
                "unassign_segments": unassign,
                "ttl_days": ttl_days,
                "relations_created": created,
                "relations_deactivated": deactivated,
            }
        )
        return created, deactivated

    async def get_user_segments(self, user_id: int) -> List[str]:
        """
        Slugs of the active segments the user is actively assigned to.
        """
        stmt = (
            select(Segment.slug)
            .join(UserSegmentRelation, UserSegmentRelation.segment_id == Segment.id)
            .where(
                UserSegmentRelation.user_id == user_id,
                UserSegmentRelation.is_active.is_(True),
                Segment.is_active.is_(True),
            )
            .distinct()
            .order_by(Segment.slug)
        )
        with store_errors("get user segments"):
            result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _insert_relations(
        self,
        user_ids: Sequence[int],
        segment_ids: Sequence[int],
        ttl_days: int,
    ) -> int:
        if not user_ids or not segment_ids:
            return 0

        already_active = await self._active_pairs(user_ids, segment_ids)
        now = utcnow()
        expires_at = now + timedelta(days=ttl_days) if ttl_days else None

        rows: List[Dict[str, Any]] = []
        for user_id in user_ids:
            for segment_id in segment_ids:
                if (user_id, segment_id) in already_active:
                    logger.debug(
                        "Relation already active, skipping",
                        extra={"user_id": user_id, "segment_id": segment_id}
                    )
                    continue
                rows.append({
                    "user_id": user_id,
                    "segment_id": segment_id,
                    "is_active": True,
                    "date_assigned": now,
                    "date_unassigned": expires_at,
                })

        if not rows:
            return 0

        result = await self.db.execute(
            self._insert_skipping_active().values(rows).returning(UserSegmentRelation.id)
        )
        created = len(result.all())
        if created < len(rows):
            logger.info(
                "Relations assigned concurrently, skipped",
                extra={"skipped": len(rows) - created}
            )
        return created

    def _insert_skipping_active(self):
        """
        INSERT that leaves a pair alone when another transaction has made it
        active since the pre-check.
        """
        dialect_insert_fn = dialect_insert(self.db)
        if dialect_insert_fn is None:
            return insert(UserSegmentRelation)
        return dialect_insert_fn(UserSegmentRelation).on_conflict_do_nothing(
            index_elements=[UserSegmentRelation.user_id, UserSegmentRelation.segment_id],
            index_where=text("is_active"),
        )

    async def _deactivate_relations(
        self,
        user_ids: Sequence[int],
        segment_ids: Sequence[int],
    ) -> int:
        if not user_ids or not segment_ids:
            return 0

        result = await self.db.execute(
            update(UserSegmentRelation)
            .where(
                UserSegmentRelation.user_id.in_(user_ids),
                UserSegmentRelation.segment_id.in_(segment_ids),
                UserSegmentRelation.is_active.is_(True),
            )
            .values(is_active=False, date_unassigned=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def _active_pairs(
        self,
        user_ids: Sequence[int],
        segment_ids: Sequence[int],
    ) -> Set[Tuple[int, int]]:
        result = await self.db.execute(
            select(UserSegmentRelation.user_id, UserSegmentRelation.segment_id)
            .where(
                UserSegmentRelation.user_id.in_(user_ids),
                UserSegmentRelation.segment_id.in_(segment_ids),
                UserSegmentRelation.is_active.is_(True),
            )
        )
        return {(user_id, segment_id) for user_id, segment_id in result.all()}

    async def _ensure_users_exist(self, user_ids: Sequence[int]) -> None:
        with store_errors("check users"):
            result = await self.db.execute(select(User.id).where(User.id.in_(user_ids)))
        known = set(result.scalars().all())
        missing = [user_id for user_id in user_ids if user_id not in known]
        if missing:
            logger.warning("Unknown users", extra={"missing_user_ids": missing})
            raise NotFoundError(
                f"Users not found: {', '.join(str(user_id) for user_id in missing)}",
                extra={"missing_user_ids": missing}
            )


def _validate_ttl(ttl_days: int) -> None:
    if ttl_days < 0 or ttl_days > MAX_TTL_DAYS:
        raise InvalidInputError(
            f"TTL must be between 0 and {MAX_TTL_DAYS} days",
            extra={"ttl": ttl_days}
        )
