"""Badge administration and write-once badge grants."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from labquest.db.models import Badge, UserBadge
from labquest.db.upsert import insert_for
from labquest.gamification.award_service import get_user
from labquest.gamification.badge_criteria import BADGE_CATEGORIES, validate_criteria
from labquest.gamification.events import commit_and_publish, emit_event
from labquest.gamification.exceptions import ConfigurationError, InvalidStateError, NotFoundError
from labquest.gamification.timeutils import utcnow

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = ("name", "description", "category", "icon", "color", "criteria", "is_active")


async def list_badges(db: AsyncSession, include_inactive: bool = False) -> list[Badge]:
    stmt = select(Badge).order_by(Badge.category, Badge.name)
    if not include_inactive:
        stmt = stmt.where(Badge.is_active.is_(True))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_badge(db: AsyncSession, badge_id: int) -> Badge:
    badge = await db.get(Badge, badge_id)
    if badge is None:
        raise NotFoundError(f"Badge {badge_id} not found", {"badge_id": badge_id})
    return badge


def _check_category(category: str) -> str:
    category = category.lower()
    if category not in BADGE_CATEGORIES:
        raise ConfigurationError(f"Unknown badge category: {category}", {"allowed": list(BADGE_CATEGORIES)})
    return category


async def create_badge(
    db: AsyncSession,
    name: str,
    category: str,
    criteria: dict | None = None,
    description: str = "",
    icon: str | None = None,
    color: str | None = None,
    is_active: bool = True,
    created_by: int | None = None,
) -> Badge:
    """Create a badge after validating its criteria."""
    badge = Badge(
        name=name,
        description=description,
        category=_check_category(category),
        icon=icon,
        color=color,
        criteria=validate_criteria(criteria),
        is_active=is_active,
        created_by=created_by,
    )
    db.add(badge)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConfigurationError(f"Badge name already exists: {name}") from exc
    await db.refresh(badge)
    return badge


async def update_badge(db: AsyncSession, badge_id: int, **changes: object) -> Badge:
    badge = await get_badge(db, badge_id)
    for key, value in changes.items():
        if key not in _EDITABLE_FIELDS or value is None:
            continue
        if key == "criteria":
            value = validate_criteria(value)  # type: ignore[arg-type]
        elif key == "category":
            value = _check_category(str(value))
        setattr(badge, key, value)
    await db.commit()
    await db.refresh(badge)
    return badge


async def delete_badge(db: AsyncSession, badge_id: int) -> Badge:
    """Deactivate a badge. Earned badges stay with their holders."""
    badge = await get_badge(db, badge_id)
    badge.is_active = False
    await db.commit()
    return badge


async def has_badge(db: AsyncSession, user_id: int, badge_id: int) -> bool:
    """Check if user already has a specific badge."""
    result = await db.execute(
        select(UserBadge.id).where(
            UserBadge.user_id == user_id,
            UserBadge.badge_id == badge_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def grant_badge(
    db: AsyncSession,
    redis: object,
    user_id: int,
    badge: Badge,
    earned_by: int | None = None,
) -> bool:
    """Insert a user badge once. Returns False if the user already holds it.

    Does not commit. A concurrent duplicate hits the unique constraint and
    is skipped without an error.
    """
    stmt = insert_for(db, UserBadge).values(
        user_id=user_id,
        badge_id=badge.id,
        earned_at=utcnow(),
        earned_by=earned_by,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=["user_id", "badge_id"]).returning(UserBadge.id)
    inserted = (await db.execute(stmt)).scalar_one_or_none()
    if inserted is None:
        return False

    await emit_event(
        db, redis, user_id,
        subtype="badge_earned",
        title=f'Badge Earned: "{badge.name}"',
        description=badge.description,
        payload={"badge_id": badge.id, "badge_name": badge.name, "category": badge.category, "manual": earned_by is not None},
    )
    return True


async def award_badge(
    db: AsyncSession,
    redis: object,
    badge_id: int,
    user_id: int,
    awarded_by: int | None,
) -> UserBadge:
    """Manually grant a badge. Raises InvalidStateError if already held."""
    badge = await get_badge(db, badge_id)
    await get_user(db, user_id)
    if not await grant_badge(db, redis, user_id, badge, earned_by=awarded_by):
        raise InvalidStateError(
            f"User {user_id} already holds badge {badge_id}",
            {"user_id": user_id, "badge_id": badge_id},
        )
    await commit_and_publish(db, redis)
    logger.info("Badge %s manually awarded to user %s by %s", badge_id, user_id, awarded_by)
    result = await db.execute(
        select(UserBadge).where(UserBadge.user_id == user_id, UserBadge.badge_id == badge_id)
    )
    return result.scalar_one()


async def list_user_badges(db: AsyncSession, user_id: int) -> list[UserBadge]:
    await get_user(db, user_id)
    result = await db.execute(
        select(UserBadge)
        .where(UserBadge.user_id == user_id)
        .order_by(UserBadge.earned_at.desc())
    )
    return list(result.scalars().unique().all())

