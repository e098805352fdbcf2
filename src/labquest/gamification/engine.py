"""Gamification engine facade used by routers and the event worker.

Event flow for collaborator commands:
1. Ledger idempotency check + progression update (award_service)
2. Quest progress increments in the same transaction
3. Commit, then badge re-evaluation for the user
4. Return the progression snapshot
"""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from datetime import date, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from labquest.config import get_settings
from labquest.db.models import Badge, InventoryItem, UserBadge
from labquest.gamification import badge_service, chest_service, quest_service
from labquest.gamification.award_service import (
    get_user,
    get_user_progression,
    grant_award,
    update_user_profile,
)
from labquest.gamification.badge_rules import BadgeRulesEngine
from labquest.gamification.events import commit_and_publish
from labquest.gamification.ledger import AwardSource
from labquest.gamification.progression import (
    task_coins,
    task_completion_points,
    work_session_coins,
    work_session_points,
)
from labquest.gamification.story_arcs import StoryArcResolver
from labquest.gamification.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


class GamificationEngine:
    """Single entry point for every progression and reward command."""

    def __init__(self, db: AsyncSession, redis: object, rng: random.Random | None = None) -> None:
        self.db = db
        self.redis = redis
        self.rng = rng
        self.settings = get_settings()

    # --- Commands from collaborators ---

    async def award_from_task_completion(
        self,
        user_id: int,
        task_id: int,
        task_points: int | None,
        due_date: datetime | date | None = None,
        completed_at: datetime | None = None,
        project_id: int | None = None,
    ) -> dict:
        """Reward a completed task once, net of any late penalty."""
        await get_user(self.db, user_id)
        completed_at = as_utc(completed_at) or utcnow()
        scoring = task_completion_points(
            task_points, due_date, completed_at, default_points=self.settings.default_task_points
        )
        points = scoring["points"]

        result = await self._grant(
            user_id,
            {"TASKS_COMPLETED": 1, "POINTS": points},
            source_type=AwardSource.TASK_COMPLETED,
            source_id=task_id,
            points=points,
            coins=task_coins(points),
            project_id=project_id,
            description=f"Task {task_id} completed",
            occurred_at=completed_at,
        )
        return await self._finish(user_id, result, {"task": scoring})

    async def award_from_work_session(
        self,
        user_id: int,
        work_session_id: int,
        duration_seconds: int,
        completed_task_ids: Sequence[int] = (),
        project_id: int | None = None,
        ended_at: datetime | None = None,
    ) -> dict:
        """Reward a finished work session once."""
        await get_user(self.db, user_id)
        duration_seconds = max(0, int(duration_seconds or 0))
        task_count = len(set(completed_task_ids))
        points = work_session_points(duration_seconds, task_count)

        result = await self._grant(
            user_id,
            {
                "WORK_SESSIONS_COMPLETED": 1,
                "WORK_HOURS": round(duration_seconds / 3600, 4),
                "POINTS": points,
            },
            source_type=AwardSource.WORK_SESSION_COMPLETED,
            source_id=work_session_id,
            points=points,
            coins=work_session_coins(points),
            project_id=project_id,
            duration_seconds=duration_seconds,
            description=f"Work session {work_session_id} completed",
            occurred_at=as_utc(ended_at) or utcnow(),
        )
        return await self._finish(
            user_id, result, {"work_session": {"duration_seconds": duration_seconds, "completed_tasks": task_count}}
        )

    async def _grant(self, user_id: int, quest_metrics: dict[str, float], **award: Any) -> dict:
        """Ledger row, balances and quest progress land together or not at all."""
        try:
            result = await grant_award(self.db, self.redis, user_id, **award)
            if not result["already_awarded"]:
                for metric, amount in quest_metrics.items():
                    await quest_service.record_quest_event(
                        self.db, self.redis, user_id, metric, amount, award.get("project_id")
                    )
        except Exception:
            await self.db.rollback()
            raise
        return result

    async def _finish(self, user_id: int, result: dict, scoring: dict) -> dict:
        await commit_and_publish(self.db, self.redis)
        badges: list[Badge] = []
        if not result["already_awarded"]:
            badges = await self.evaluate_user_badges(user_id)
        return {
            **result,
            "scoring": scoring,
            "badges_awarded": [b.name for b in badges],
            "progression": await get_user_progression(self.db, user_id),
        }

    # --- Progression ---

    async def get_user_progression(self, user_id: int) -> dict:
        return await get_user_progression(self.db, user_id)

    async def update_user_profile(self, user_id: int, **changes: str | None) -> dict:
        return await update_user_profile(self.db, user_id, **changes)

    # --- Badges ---

    async def list_badges(self) -> list[Badge]:
        return await badge_service.list_badges(self.db)

    async def award_badge(self, badge_id: int, user_id: int, awarded_by: int | None) -> UserBadge:
        return await badge_service.award_badge(self.db, self.redis, badge_id, user_id, awarded_by)

    async def evaluate_user_badges(self, user_id: int) -> list[Badge]:
        return await BadgeRulesEngine(self.db, self.redis).evaluate_user(user_id)

    async def evaluate_all_users(self) -> dict[int, list[str]]:
        return await BadgeRulesEngine(self.db, self.redis).evaluate_all_users()

    # --- Quests ---

    async def list_quests(self, user_id: int) -> list[dict]:
        return await quest_service.list_quests_for_user(self.db, user_id)

    async def claim_quest(self, user_id: int, quest_id: int) -> dict:
        return await quest_service.claim_quest(self.db, self.redis, user_id, quest_id)

    # --- Chests ---

    async def list_chests(self, user_id: int | None = None) -> list[dict]:
        return await chest_service.list_chest_catalog(self.db, user_id)

    async def open_chest(self, user_id: int, chest_id: int, quantity: int = 1) -> dict:
        return await chest_service.open_chest(
            self.db, self.redis, user_id, chest_id, quantity,
            rng=self.rng,
            max_quantity=self.settings.chest_max_open_quantity,
        )

    async def list_inventory(self, user_id: int) -> list[InventoryItem]:
        return await chest_service.list_inventory(self.db, user_id)

    # --- Story arcs ---

    async def resolve_arcs_for_user(self, user_id: int) -> list[dict]:
        return await StoryArcResolver(self.db, self.redis).resolve_arcs_for_user(user_id)
