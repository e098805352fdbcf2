"""Award ledger: append-only idempotency log keyed by (user, source_type, source_id)."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from labquest.db.models import AwardRecord
from labquest.db.upsert import insert_for
from labquest.gamification.timeutils import utcnow


class AwardSource(str, Enum):
    TASK_COMPLETED = "TASK_COMPLETED"
    WORK_SESSION_COMPLETED = "WORK_SESSION_COMPLETED"
    QUEST_CLAIMED = "QUEST_CLAIMED"
    STORY_STEP_COMPLETED = "STORY_STEP_COMPLETED"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"


async def has_award(db: AsyncSession, user_id: int, source_type: AwardSource | str, source_id: int) -> bool:
    """Check whether this real-world event was already rewarded."""
    result = await db.execute(
        select(AwardRecord.id).where(
            AwardRecord.user_id == user_id,
            AwardRecord.source_type == AwardSource(source_type).value,
            AwardRecord.source_id == source_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def record_award(
    db: AsyncSession,
    user_id: int,
    source_type: AwardSource | str,
    source_id: int,
    points_awarded: int,
    xp_awarded: int,
    coins_awarded: int = 0,
    trophies_awarded: int = 0,
    project_id: int | None = None,
    duration_seconds: int | None = None,
    description: str | None = None,
    occurred_at: datetime | None = None,
) -> AwardRecord | None:
    """Insert a ledger row. Returns None if the key already exists.

    The unique constraint is the concurrency guard: a racing writer for the
    same (user_id, source_type, source_id) gets no row back instead of an
    error, so callers report it as already awarded.
    """
    stmt = insert_for(db, AwardRecord).values(
        user_id=user_id,
        source_type=AwardSource(source_type).value,
        source_id=source_id,
        points_awarded=points_awarded,
        xp_awarded=xp_awarded,
        coins_awarded=coins_awarded,
        trophies_awarded=trophies_awarded,
        project_id=project_id,
        duration_seconds=duration_seconds,
        description=description,
        occurred_at=occurred_at or utcnow(),
    )
    stmt = stmt.on_conflict_do_nothing(
        index_elements=["user_id", "source_type", "source_id"],
    ).returning(AwardRecord)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def count_awards(db: AsyncSession, user_id: int, source_type: AwardSource | str) -> int:
    result = await db.execute(
        select(func.count(AwardRecord.id)).where(
            AwardRecord.user_id == user_id,
            AwardRecord.source_type == AwardSource(source_type).value,
        )
    )
    return int(result.scalar_one())


async def list_user_awards(
    db: AsyncSession,
    user_id: int,
    source_types: list[AwardSource] | None = None,
) -> list[AwardRecord]:
    """All ledger rows for a user, oldest first (used for statistics)."""
    stmt = select(AwardRecord).where(AwardRecord.user_id == user_id)
    if source_types:
        stmt = stmt.where(AwardRecord.source_type.in_([s.value for s in source_types]))
    result = await db.execute(stmt.order_by(AwardRecord.occurred_at.asc(), AwardRecord.id.asc()))
    return list(result.scalars().all())
