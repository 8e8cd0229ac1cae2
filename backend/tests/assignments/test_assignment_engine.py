"""
Assignment Engine Tests

This module contains tests for assigning, unassigning and listing user
segments.
"""

import logging
from datetime import timedelta
from typing import List

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from usersegments.core.exceptions import InvalidInputError, NotFoundError, TransientStoreError
from usersegments.models.segment import MAX_TTL_DAYS, Segment, UserSegmentRelation
from usersegments.modules.assignments.service import AssignmentEngine
from usersegments.modules.segments.service import SegmentStore
from usersegments.monitoring.prometheus import get_segment_relations_total

VOICE = "AVITO_VOICE_MESSAGES"
DISCOUNT = "AVITO_DISCOUNT_30"


async def _relations(db: AsyncSession, user_id: int) -> List[UserSegmentRelation]:
    result = await db.execute(
        select(UserSegmentRelation)
        .where(UserSegmentRelation.user_id == user_id)
        .order_by(UserSegmentRelation.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@pytest.fixture
async def segments(test_db: AsyncSession):
    """Create the segments used throughout this module."""
    store = SegmentStore(test_db)
    await store.create_or_reactivate(VOICE)
    await store.create_or_reactivate(DISCOUNT)
    return store


@pytest.mark.asyncio
async def test_assign_and_list(test_db: AsyncSession, segments, make_users):
    """Test assigning segments to users."""
    # Arrange
    user_ids = await make_users(2)
    engine = AssignmentEngine(test_db)

    # Act
    created = await engine.assign(user_ids, [VOICE, DISCOUNT])

    # Assert
    assert created == 4
    for user_id in user_ids:
        assert await engine.get_user_segments(user_id) == sorted([VOICE, DISCOUNT])


@pytest.mark.asyncio
async def test_assign_twice_keeps_one_active_relation(test_db: AsyncSession, segments, make_users):
    """Re-assigning an active pair is skipped, the rest of the batch goes through."""
    user_ids = await make_users(1)
    engine = AssignmentEngine(test_db)
    await engine.assign(user_ids, [VOICE])

    created = await engine.assign(user_ids, [VOICE, DISCOUNT])

    assert created == 1
    relations = await _relations(test_db, user_ids[0])
    active = [r for r in relations if r.is_active]
    assert len(relations) == 2
    assert len(active) == 2
    assert len({r.segment_id for r in active}) == 2


@pytest.mark.asyncio
async def test_assign_with_ttl_sets_deadline(test_db: AsyncSession, segments, make_users):
    """Test that a TTL puts the unassign deadline exactly ttl days out."""
    # Arrange
    user_ids = await make_users(1)

    # Act
    await AssignmentEngine(test_db).assign(user_ids, [VOICE], ttl_days=3)

    # Assert
    relation = (await _relations(test_db, user_ids[0]))[0]
    assert relation.is_active is True
    assert relation.date_unassigned - relation.date_assigned == timedelta(days=3)


@pytest.mark.asyncio
async def test_assign_without_ttl_never_expires(test_db: AsyncSession, segments, make_users):
    user_ids = await make_users(1)

    await AssignmentEngine(test_db).assign(user_ids, [VOICE], ttl_days=0)

    relation = (await _relations(test_db, user_ids[0]))[0]
    assert relation.date_unassigned is None


@pytest.mark.asyncio
async def test_assign_rejects_negative_ttl(test_db: AsyncSession, segments, make_users):
    user_ids = await make_users(1)

    with pytest.raises(InvalidInputError):
        await AssignmentEngine(test_db).assign(user_ids, [VOICE], ttl_days=-1)


@pytest.mark.asyncio
async def test_assign_empty_lists_is_noop(test_db: AsyncSession, segments, make_users):
    user_ids = await make_users(1)
    engine = AssignmentEngine(test_db)

    assert await engine.assign(user_ids, []) == 0
    assert await engine.assign([], [VOICE]) == 0
    assert await engine.unassign(user_ids, []) == 0
    assert await _relations(test_db, user_ids[0]) == []


@pytest.mark.asyncio
async def test_assign_unknown_segment(test_db: AsyncSession, segments, make_users):
    """Test that an unknown slug fails the whole batch."""
    # Arrange
    user_ids = await make_users(1)

    # Act
    with pytest.raises(NotFoundError):
        await AssignmentEngine(test_db).assign(user_ids, [VOICE, "NO_SUCH_SEGMENT"])

    # Assert
    assert await _relations(test_db, user_ids[0]) == []


@pytest.mark.asyncio
async def test_assign_deleted_segment(test_db: AsyncSession, segments, make_users):
    user_ids = await make_users(1)
    await segments.deactivate(DISCOUNT)

    with pytest.raises(NotFoundError):
        await AssignmentEngine(test_db).assign(user_ids, [DISCOUNT])


@pytest.mark.asyncio
async def test_assign_unknown_user(test_db: AsyncSession, segments, make_users):
    await make_users(1)

    with pytest.raises(NotFoundError) as exc_info:
        await AssignmentEngine(test_db).assign([1, 42], [VOICE])

    assert exc_info.value.extra["missing_user_ids"] == [42]
    assert await _relations(test_db, 1) == []


@pytest.mark.asyncio
async def test_unassign(test_db: AsyncSession, segments, make_users):
    """Test unassigning ends the relation and keeps the audit row."""
    # Arrange
    user_ids = await make_users(1)
    engine = AssignmentEngine(test_db)
    await engine.assign(user_ids, [VOICE, DISCOUNT])

    # Act
    deactivated = await engine.unassign(user_ids, [VOICE])

    # Assert
    assert deactivated == 1
    assert await engine.get_user_segments(user_ids[0]) == [DISCOUNT]
    relations = await _relations(test_db, user_ids[0])
    assert len(relations) == 2
    ended = [r for r in relations if not r.is_active]
    assert len(ended) == 1
    assert ended[0].date_unassigned is not None


@pytest.mark.asyncio
async def test_unassign_without_relation_is_noop(test_db: AsyncSession, segments, make_users):
    user_ids = await make_users(1)

    assert await AssignmentEngine(test_db).unassign(user_ids, [VOICE]) == 0


@pytest.mark.asyncio
async def test_reassign_after_unassign_creates_new_relation(test_db: AsyncSession, segments, make_users):
    user_ids = await make_users(1)
    engine = AssignmentEngine(test_db)
    await engine.assign(user_ids, [VOICE])
    await engine.unassign(user_ids, [VOICE])

    assert await engine.assign(user_ids, [VOICE]) == 1

    relations = await _relations(test_db, user_ids[0])
    assert [r.is_active for r in relations] == [False, True]


@pytest.mark.asyncio
async def test_get_user_segments_hides_inactive_segments(test_db: AsyncSession, segments, make_users):
    """An active relation to an inactive segment is not reported."""
    # Arrange
    user_ids = await make_users(1)
    engine = AssignmentEngine(test_db)
    await engine.assign(user_ids, [VOICE, DISCOUNT])
    # Flip the segment without touching its relations
    segment = await segments.get(VOICE)
    segment.is_active = False
    await test_db.commit()

    # Act
    result = await engine.get_user_segments(user_ids[0])

    # Assert
    assert result == [DISCOUNT]


@pytest.mark.asyncio
async def test_get_user_segments_unknown_user(test_db: AsyncSession, segments):
    assert await AssignmentEngine(test_db).get_user_segments(999) == []


@pytest.mark.asyncio
async def test_update_user_segments(test_db: AsyncSession, segments, make_users):
    """Test assigning and unassigning in one call."""
    # Arrange
    user_ids = await make_users(1)
    engine = AssignmentEngine(test_db)
    await engine.assign(user_ids, [VOICE])

    # Act
    created, deactivated = await engine.update_user_segments(
        user_ids[0],
        assign_slugs=[DISCOUNT],
        unassign_slugs=[VOICE],
        ttl_days=0,
    )

    # Assert
    assert (created, deactivated) == (1, 1)
    assert await engine.get_user_segments(user_ids[0]) == [DISCOUNT]


@pytest.mark.asyncio
async def test_update_user_segments_bad_slug_changes_nothing(test_db: AsyncSession, segments, make_users):
    """A bad slug in the unassign list also blocks the assignments."""
    user_ids = await make_users(1)
    engine = AssignmentEngine(test_db)

    with pytest.raises(NotFoundError):
        await engine.update_user_segments(
            user_ids[0],
            assign_slugs=[VOICE],
            unassign_slugs=["NO_SUCH_SEGMENT"],
        )

    assert await _relations(test_db, user_ids[0]) == []


@pytest.mark.asyncio
async def test_update_user_segments_unassigns_from_deleted_segment(test_db: AsyncSession, segments, make_users):
    user_ids = await make_users(1)
    engine = AssignmentEngine(test_db)
    await engine.assign(user_ids, [VOICE])
    segment = await segments.get(VOICE)
    segment.is_active = False
    await test_db.commit()

    created, deactivated = await engine.update_user_segments(
        user_ids[0], assign_slugs=[], unassign_slugs=[VOICE]
    )

    assert (created, deactivated) == (0, 1)


@pytest.mark.asyncio
async def test_segment_rows_untouched_by_assignment(test_db: AsyncSession, segments, make_users):
    user_ids = await make_users(1)

    await AssignmentEngine(test_db).assign(user_ids, [VOICE])

    result = await test_db.execute(select(Segment.slug, Segment.is_active).order_by(Segment.slug))
    assert result.all() == [(DISCOUNT, True), (VOICE, True)]


@pytest.mark.asyncio
async def test_assign_logs_outcome(test_db: AsyncSession, segments, make_users, caplog):
    """Assignment outcomes are logged with INFO enabled."""
    # Arrange
    user_ids = await make_users(2)
    caplog.set_level(logging.INFO, logger="usersegments")

    # Act
    created = await AssignmentEngine(test_db).assign(user_ids, [VOICE])
    created_update, _ = await AssignmentEngine(test_db).update_user_segments(
        user_ids[0], assign_slugs=[DISCOUNT], unassign_slugs=[VOICE]
    )

    # Assert
    assert created == 2
    assert created_update == 1
    records = {record.getMessage(): record for record in caplog.records}
    assert records["Segments assigned"].relations_created == 2
    assert records["User segments updated"].relations_created == 1
    assert records["User segments updated"].relations_deactivated == 1


@pytest.mark.parametrize("ttl_days", [MAX_TTL_DAYS + 1, 3_000_000])
@pytest.mark.asyncio
async def test_assign_rejects_ttl_beyond_limit(test_db: AsyncSession, segments, make_users, ttl_days):
    user_ids = await make_users(1)
    engine = AssignmentEngine(test_db)

    with pytest.raises(InvalidInputError):
        await engine.assign(user_ids, [VOICE], ttl_days=ttl_days)
    with pytest.raises(InvalidInputError):
        await engine.update_user_segments(
            user_ids[0], assign_slugs=[VOICE], unassign_slugs=[], ttl_days=ttl_days
        )

    assert await _relations(test_db, user_ids[0]) == []


@pytest.mark.asyncio
async def test_assign_accepts_max_ttl(test_db: AsyncSession, segments, make_users):
    user_ids = await make_users(1)

    await AssignmentEngine(test_db).assign(user_ids, [VOICE], ttl_days=MAX_TTL_DAYS)

    relation = (await _relations(test_db, user_ids[0]))[0]
    assert relation.date_unassigned - relation.date_assigned == timedelta(days=MAX_TTL_DAYS)


@pytest.mark.asyncio
async def test_assign_skips_pair_activated_concurrently(test_db: AsyncSession, segments, make_users, monkeypatch):
    """A pair made active by another transaction after the pre-check is skipped."""
    # Arrange
    user_ids = await make_users(2)
    voice = await segments.get(VOICE)
    test_db.add(UserSegmentRelation(user_id=user_ids[0], segment_id=voice.id, is_active=True))
    await test_db.commit()

    async def no_active_pairs(self, user_ids, segment_ids):
        return set()

    monkeypatch.setattr(AssignmentEngine, "_active_pairs", no_active_pairs)

    # Act
    created = await AssignmentEngine(test_db).assign(user_ids, [VOICE])

    # Assert
    assert created == 1
    for user_id in user_ids:
        active = [r for r in await _relations(test_db, user_id) if r.is_active]
        assert len(active) == 1


@pytest.mark.asyncio
async def test_failed_assign_is_not_counted(test_db: AsyncSession, segments, make_users, monkeypatch):
    """Relations rolled back on a failed commit are not counted."""
    # Arrange
    user_ids = await make_users(1)
    counter = get_segment_relations_total().labels(operation="assigned")
    before = counter._value.get()

    async def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("connection lost"))

    monkeypatch.setattr(test_db, "commit", failing_commit)

    # Act
    with pytest.raises(TransientStoreError):
        await AssignmentEngine(test_db).assign(user_ids, [VOICE])

    # Assert
    assert counter._value.get() == before
