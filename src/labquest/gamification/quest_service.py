"""Quest progress tracker: per-user counters, state machine and claims.

State progression: IN_PROGRESS -> COMPLETED -> CLAIMED
Transitions are validated; states are never skipped or reversed.
Progress never decreases and is capped at the quest target.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from labquest.db.models import Quest, QuestProgress
from labquest.db.upsert import insert_for
from labquest.gamification.award_service import (
    get_or_create_gamification,
    get_user,
    get_user_progression,
    grant_award,
)
from labquest.gamification.events import commit_and_publish, emit_event
from labquest.gamification.exceptions import ConfigurationError, InvalidStateError, NotFoundError
from labquest.gamification.ledger import AwardSource
from labquest.gamification.progression import elo_of, is_known_elo, level_of, meets_min_elo
from labquest.gamification.timeutils import as_utc, utcnow, within_window

logger = logging.getLogger(__name__)

QUEST_TYPES = ("DAILY", "WEEKLY", "EVENT", "STORY")
QUEST_SCOPES = ("PROJECT", "GLOBAL", "CROSS_PROJECT")
QUEST_METRICS = ("TASKS_COMPLETED", "WORK_SESSIONS_COMPLETED", "WORK_HOURS", "POINTS")

IN_PROGRESS = "IN_PROGRESS"
COMPLETED = "COMPLETED"
CLAIMED = "CLAIMED"

VALID_TRANSITIONS: dict[str, list[str]] = {
    IN_PROGRESS: [COMPLETED],
    COMPLETED: [CLAIMED],
    CLAIMED: [],
}


def validate_transition(current_status: str, target_status: str) -> None:
    """Validate a state transition. Raises InvalidStateError if invalid."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise InvalidStateError(
            f"Invalid transition: {current_status} -> {target_status}. "
            f"Valid transitions: {valid}",
            {"status": current_status},
        )


def scope_admits(quest: Quest, project_id: int | None) -> bool:
    """GLOBAL takes every event, PROJECT its own project, CROSS_PROJECT any project event."""
    if quest.scope == "GLOBAL":
        return True
    if quest.scope == "PROJECT":
        return project_id is not None and project_id == quest.project_id
    if quest.scope == "CROSS_PROJECT":
        return project_id is not None
    return False


def _eligible(quest: Quest, level: int, elo: str) -> bool:
    return level >= (quest.min_level or 0) and meets_min_elo(elo, quest.min_elo)


async def _get_progress(db: AsyncSession, user_id: int, quest_id: int) -> QuestProgress | None:
    result = await db.execute(
        select(QuestProgress).where(
            QuestProgress.user_id == user_id,
            QuestProgress.quest_id == quest_id,
        )
    )
    return result.scalar_one_or_none()


async def _get_or_create_progress(db: AsyncSession, user_id: int, quest: Quest) -> QuestProgress:
    progress = await _get_progress(db, user_id, quest.id)
    if progress is not None:
        return progress
    stmt = insert_for(db, QuestProgress).values(
        user_id=user_id,
        quest_id=quest.id,
        progress_value=0,
        target_value=quest.target,
        status=IN_PROGRESS,
        started_at=utcnow(),
    )
    await db.execute(stmt.on_conflict_do_nothing(index_elements=["user_id", "quest_id"]))
    result = await db.execute(
        select(QuestProgress).where(
            QuestProgress.user_id == user_id,
            QuestProgress.quest_id == quest.id,
        )
    )
    return result.scalar_one()


async def record_quest_event(
    db: AsyncSession,
    redis: object,
    user_id: int,
    metric: str,
    amount: float,
    project_id: int | None = None,
) -> list[QuestProgress]:
    """Advance every matching quest for this user. Returns newly completed rows.

    Runs inside the award transaction and does not commit, so an event is
    counted exactly as many times as it is rewarded: once.
    """
    if amount <= 0:
        return []
    now = utcnow()
    result = await db.execute(
        select(Quest).where(Quest.is_active.is_(True), Quest.metric == metric).order_by(Quest.id)
    )
    quests = [q for q in result.scalars().all() if within_window(now, q.starts_at, q.ends_at)]
    if not quests:
        return []

    gam = await get_or_create_gamification(db, user_id)
    level, elo = level_of(gam.points), elo_of(gam.points)

    completed: list[QuestProgress] = []
    for quest in quests:
        if not scope_admits(quest, project_id) or not _eligible(quest, level, elo):
            continue
        progress = await _get_or_create_progress(db, user_id, quest)
        if progress.status != IN_PROGRESS:
            continue

        progress.target_value = quest.target
        progress.progress_value = max(
            progress.progress_value,
            min(quest.target, progress.progress_value + amount),
        )
        if progress.progress_value >= progress.target_value:
            validate_transition(progress.status, COMPLETED)
            progress.status = COMPLETED
            progress.completed_at = now
            completed.append(progress)
            await emit_event(
                db, redis, user_id,
                subtype="quest_completed",
                title=f"Quest complete: {quest.title}",
                description="Claim your reward!",
                payload={"quest_id": quest.id, "quest_code": quest.code},
            )

    await db.flush()
    return completed


def _quest_view(quest: Quest, progress: QuestProgress | None, level: int, elo: str) -> dict:
    value = progress.progress_value if progress else 0.0
    target = progress.target_value if progress else quest.target
    percent = 0 if target <= 0 else min(100, int(value * 100 // target))
    return {
        "quest_id": quest.id,
        "code": quest.code,
        "title": quest.title,
        "description": quest.description,
        "quest_type": quest.quest_type,
        "scope": quest.scope,
        "project_id": quest.project_id,
        "metric": quest.metric,
        "target": target,
        "progress_value": value,
        "percent": percent,
        "status": progress.status if progress else "NOT_STARTED",
        "locked": not _eligible(quest, level, elo),
        "min_level": quest.min_level,
        "min_elo": quest.min_elo,
        "reward": {"xp": quest.reward_xp, "coins": quest.reward_coins, "trophies": quest.reward_trophies},
        "starts_at": quest.starts_at,
        "ends_at": quest.ends_at,
    }


async def list_quests_for_user(db: AsyncSession, user_id: int) -> list[dict]:
    """Active in-window quests with this user's progress."""
    await get_user(db, user_id)
    gam = await get_or_create_gamification(db, user_id)
    level, elo = level_of(gam.points), elo_of(gam.points)
    now = utcnow()

    result = await db.execute(select(Quest).where(Quest.is_active.is_(True)).order_by(Quest.id))
    quests = [q for q in result.scalars().all() if within_window(now, q.starts_at, q.ends_at)]

    progress_result = await db.execute(select(QuestProgress).where(QuestProgress.user_id == user_id))
    by_quest = {p.quest_id: p for p in progress_result.scalars().unique().all()}
    return [_quest_view(q, by_quest.get(q.id), level, elo) for q in quests]


async def claim_quest(db: AsyncSession, redis: object, user_id: int, quest_id: int) -> dict:
    """Pay a COMPLETED quest's reward once and move it to CLAIMED.

    Claiming anything other than a COMPLETED quest raises InvalidStateError,
    including a second claim.
    """
    await get_user(db, user_id)
    quest = await db.get(Quest, quest_id)
    if quest is None or not quest.is_active:
        raise NotFoundError(f"Quest {quest_id} not found", {"quest_id": quest_id})

    progress = await _get_progress(db, user_id, quest_id)
    if progress is None:
        raise InvalidStateError(f"Quest {quest_id} has not been started", {"status": "NOT_STARTED"})
    validate_transition(progress.status, CLAIMED)

    reward = await grant_award(
        db, redis, user_id,
        source_type=AwardSource.QUEST_CLAIMED,
        source_id=quest.id,
        points=quest.reward_xp,
        coins=quest.reward_coins,
        trophies=quest.reward_trophies,
        project_id=quest.project_id,
        description=f"Quest claimed: {quest.code}",
    )
    if reward["already_awarded"]:
        raise InvalidStateError(f"Quest {quest_id} already claimed", {"status": CLAIMED})

    progress.status = CLAIMED
    progress.claimed_at = utcnow()
    await emit_event(
        db, redis, user_id,
        subtype="quest_claimed",
        title=f"Reward claimed: {quest.title}",
        payload={"quest_id": quest.id, "xp": quest.reward_xp, "coins": quest.reward_coins},
    )
    await commit_and_publish(db, redis)
    logger.info("User %s claimed quest %s", user_id, quest.code)

    return {
        "quest_id": quest.id,
        "code": quest.code,
        "status": CLAIMED,
        "reward": {
            "xp": reward["xp_awarded"],
            "coins": reward["coins_awarded"],
            "trophies": reward["trophies_awarded"],
        },
        "progression": await get_user_progression(db, user_id),
    }


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

_QUEST_FIELDS = (
    "code", "title", "description", "quest_type", "scope", "project_id", "min_level", "min_elo",
    "metric", "target", "reward_xp", "reward_coins", "reward_trophies", "starts_at", "ends_at", "is_active",
)


def validate_quest(data: dict[str, Any]) -> dict[str, Any]:
    """Normalize quest fields or raise ConfigurationError."""
    data = {k: v for k, v in data.items() if k in _QUEST_FIELDS}
    for key, allowed in (("quest_type", QUEST_TYPES), ("scope", QUEST_SCOPES), ("metric", QUEST_METRICS)):
        value = str(data.get(key, "")).upper()
        if value not in allowed:
            raise ConfigurationError(f"Invalid {key}: {data.get(key)!r}", {"allowed": list(allowed)})
        data[key] = value
    if data["scope"] == "PROJECT" and data.get("project_id") is None:
        raise ConfigurationError("PROJECT scoped quests require project_id")
    if not data.get("target") or data["target"] <= 0:
        raise ConfigurationError("Quest target must be positive")
    for key in ("reward_xp", "reward_coins", "reward_trophies", "min_level"):
        if (data.get(key) or 0) < 0:
            raise ConfigurationError(f"{key} must not be negative")
    if data.get("min_elo"):
        if not is_known_elo(data["min_elo"]):
            raise ConfigurationError(f"Unknown elo tier: {data['min_elo']}")
        data["min_elo"] = data["min_elo"].upper()
    starts, ends = as_utc(data.get("starts_at")), as_utc(data.get("ends_at"))
    if starts and ends and ends <= starts:
        raise ConfigurationError("ends_at must be after starts_at")
    data["code"] = str(data.get("code", "")).strip().upper()
    if not data["code"]:
        raise ConfigurationError("Quest code is required")
    return data


async def create_quest(db: AsyncSession, **fields: Any) -> Quest:
    quest = Quest(**validate_quest(fields))
    db.add(quest)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConfigurationError(f"Quest code already exists: {fields.get('code')}") from exc
    await db.refresh(quest)
    return quest


async def update_quest(db: AsyncSession, quest_id: int, **changes: Any) -> Quest:
    quest = await db.get(Quest, quest_id)
    if quest is None:
        raise NotFoundError(f"Quest {quest_id} not found", {"quest_id": quest_id})
    merged = {key: getattr(quest, key) for key in _QUEST_FIELDS}
    merged.update({k: v for k, v in changes.items() if v is not None})
    for key, value in validate_quest(merged).items():
        setattr(quest, key, value)
    await db.commit()
    await db.refresh(quest)
    return quest
