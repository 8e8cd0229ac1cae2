"""
Segment Store Service

Create, reactivate, deactivate and resolve segment definitions.
"""

from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from usersegments.core.exceptions import InvalidInputError, NotFoundError
from usersegments.core.logging import get_logger
from usersegments.db.base import utcnow
from usersegments.db.session import dialect_insert, store_errors, transaction
from usersegments.models.segment import Segment, UserSegmentRelation
from usersegments.monitoring.prometheus import get_segment_relations_total

logger = get_logger(__name__)


def normalize_slug(slug: Optional[str]) -> str:
    """Strip surrounding whitespace and reject empty slugs."""
    if slug is None or not slug.strip():
        raise InvalidInputError("Segment slug must not be empty")
    return slug.strip()


class SegmentStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_or_reactivate(self, slug: str) -> Segment:
        """
        Create a segment, or mark an existing one with the same slug active.

        Raises:
            InvalidInputError: If the slug is empty
        """
        slug = normalize_slug(slug)

        async with transaction(self.db, "create segment"):
            insert = dialect_insert(self.db)
            if insert is not None:
                stmt = (
                    insert(Segment)
                    .values(slug=slug, is_active=True)
                    .on_conflict_do_update(
                        index_elements=[Segment.slug],
                        set_={"is_active": True},
                    )
                )
                await self.db.execute(stmt)
            else:
                existing = await self._get(slug)
                if existing is None:
                    self.db.add(Segment(slug=slug, is_active=True))
                else:
                    existing.is_active = True

        segment = await self.get(slug)
        logger.info("Segment created or reactivated", extra={"segment_slug": slug})
        return segment

    async def deactivate(self, slug: str) -> int:
        """
        Soft-delete a segment and end every active membership in it.

        Both updates commit together or not at all.

        Returns:
            Number of relations deactivated along with the segment

        Raises:
            NotFoundError: If the slug does not exist
        """
        slug = normalize_slug(slug)
        segment_id = (await self.resolve_ids([slug]))[0]

        async with transaction(self.db, "delete segment"):
            await self.db.execute(
                update(Segment)
                .where(Segment.id == segment_id)
                .values(is_active=False)
            )
            result = await self.db.execute(
                update(UserSegmentRelation)
                .where(
                    UserSegmentRelation.segment_id == segment_id,
                    UserSegmentRelation.is_active.is_(True),
                )
                .values(is_active=False, date_unassigned=utcnow())
            )

        deactivated = result.rowcount or 0
        get_segment_relations_total().labels(
            operation="deactivated_with_segment"
        ).inc(deactivated)
        logger.info(
            "Segment deactivated",
            extra={"segment_slug": slug, "relations_deactivated": deactivated}
        )
        return deactivated

    async def resolve_ids(
        self,
        slugs: Sequence[str],
        active_only: bool = False,
    ) -> List[int]:
        """
        Map slugs to segment ids, one id per input slug in input order.

        Raises:
            NotFoundError: Listing every slug that does not resolve
        """
        if not slugs:
            return []

        stmt = select(Segment.slug, Segment.id).where(Segment.slug.in_(set(slugs)))
        if active_only:
            stmt = stmt.where(Segment.is_active.is_(True))

        with store_errors("resolve segment ids"):
            result = await self.db.execute(stmt)
        ids_by_slug: Dict[str, int] = {slug: segment_id for slug, segment_id in result.all()}

        missing = [slug for slug in slugs if slug not in ids_by_slug]
        if missing:
            logger.warning(
                "Unknown segment slugs",
                extra={"missing_slugs": missing, "active_only": active_only}
            )
            raise NotFoundError(
                f"Segments not found: {', '.join(missing)}",
                extra={"missing_slugs": missing}
            )

        return [ids_by_slug[slug] for slug in slugs]

    async def get(self, slug: str) -> Optional[Segment]:
        with store_errors("get segment"):
            return await self._get(slug)

    async def _get(self, slug: str) -> Optional[Segment]:
        result = await self.db.execute(
            select(Segment)
            .where(Segment.slug == slug)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
