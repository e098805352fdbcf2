"""Award grants with ledger idempotency and level-up detection."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from labquest.db.models import User, UserGamification
from labquest.gamification.events import emit_event
from labquest.gamification.exceptions import NotFoundError
from labquest.gamification.ledger import AwardSource, has_award, record_award
from labquest.gamification.progression import compute_progression, elo_of, level_of
from labquest.gamification.timeutils import utcnow

logger = logging.getLogger(__name__)


async def get_user(db: AsyncSession, user_id: int) -> User:
    """Fetch a collaborator-owned user or raise NotFoundError."""
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found", {"user_id": user_id})
    return user


async def get_or_create_gamification(db: AsyncSession, user_id: int) -> UserGamification:
    """Get or create the progression row for a user."""
    result = await db.execute(
        select(UserGamification).where(UserGamification.user_id == user_id)
    )
    gam = result.scalar_one_or_none()
    if gam is None:
        gam = UserGamification(
            user_id=user_id,
            points=0,
            coins=0,
            trophies=0,
            updated_at=utcnow(),
        )
        db.add(gam)
        await db.flush()
    return gam


def _not_awarded(source_type: AwardSource, source_id: int) -> dict:
    return {
        "already_awarded": True,
        "source_type": source_type.value,
        "source_id": source_id,
        "points_awarded": 0,
        "xp_awarded": 0,
        "coins_awarded": 0,
        "trophies_awarded": 0,
        "leveled_up": False,
    }


async def grant_award(
    db: AsyncSession,
    redis: object,
    user_id: int,
    source_type: AwardSource,
    source_id: int,
    points: int = 0,
    coins: int = 0,
    trophies: int = 0,
    project_id: int | None = None,
    duration_seconds: int | None = None,
    description: str | None = None,
    occurred_at: datetime | None = None,
) -> dict:
    """Award points/coins/trophies once per (user, source_type, source_id).

    Runs inside the caller's transaction and does not commit:
    1. Check the ledger; a repeat returns already_awarded with zero amounts
    2. Insert the ledger row (a racing duplicate also yields already_awarded)
    3. Add amounts to the progression row
    4. Emit level_up if the derived level increased
    """
    source_type = AwardSource(source_type)
    if await has_award(db, user_id, source_type, source_id):
        return _not_awarded(source_type, source_id)

    points = max(0, int(points))
    coins = max(0, int(coins))
    trophies = max(0, int(trophies))

    record = await record_award(
        db,
        user_id=user_id,
        source_type=source_type,
        source_id=source_id,
        points_awarded=points,
        xp_awarded=points,
        coins_awarded=coins,
        trophies_awarded=trophies,
        project_id=project_id,
        duration_seconds=duration_seconds,
        description=description,
        occurred_at=occurred_at,
    )
    if record is None:
        logger.info("Concurrent duplicate award %s:%s for user %s", source_type.value, source_id, user_id)
        return _not_awarded(source_type, source_id)

    gam = await get_or_create_gamification(db, user_id)
    old_level = level_of(gam.points)
    old_elo = elo_of(gam.points)
    gam.points += points
    gam.coins += coins
    gam.trophies += trophies
    gam.updated_at = utcnow()
    await db.flush()

    new_level = level_of(gam.points)
    if new_level > old_level:
        await emit_event(
            db, redis, user_id,
            subtype="level_up",
            title="Level Up!",
            description=f"Level {new_level}",
            payload={"old_level": old_level, "new_level": new_level},
        )
    new_elo = elo_of(gam.points)
    if new_elo != old_elo:
        await emit_event(
            db, redis, user_id,
            subtype="elo_promoted",
            title="New elo tier!",
            description=new_elo,
            payload={"old_elo": old_elo, "new_elo": new_elo},
        )

    return {
        "already_awarded": False,
        "source_type": source_type.value,
        "source_id": source_id,
        "points_awarded": points,
        "xp_awarded": points,
        "coins_awarded": coins,
        "trophies_awarded": trophies,
        "leveled_up": new_level > old_level,
    }


PROFILE_FIELD_LIMITS = {"display_name": 64, "archetype": 32, "title": 64}


def clean_profile_text(value: str | None, max_len: int) -> str | None:
    """Trim and truncate; blank input clears the field."""
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized[:max_len]


async def update_user_profile(db: AsyncSession, user_id: int, **changes: str | None) -> dict:
    """Set display name, archetype or title. Omitted fields are left untouched."""
    await get_user(db, user_id)
    gam = await get_or_create_gamification(db, user_id)
    for field, max_len in PROFILE_FIELD_LIMITS.items():
        if field in changes:
            setattr(gam, field, clean_profile_text(changes[field], max_len))
    gam.updated_at = utcnow()
    await db.commit()
    logger.info("User %s updated profile fields %s", user_id, sorted(set(changes) & set(PROFILE_FIELD_LIMITS)))
    return await get_user_progression(db, user_id)


async def get_user_progression(db: AsyncSession, user_id: int) -> dict:
    """Progression snapshot with derived level, elo and progress."""
    await get_user(db, user_id)
    gam = await get_or_create_gamification(db, user_id)
    return compute_progression(
        user_id=user_id,
        points=gam.points,
        coins=gam.coins,
        trophies=gam.trophies,
        archetype=gam.archetype,
        title=gam.title,
        display_name=gam.display_name,
    )
