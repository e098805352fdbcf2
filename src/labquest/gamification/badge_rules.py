"""Badge rules engine: evaluates user statistics against badge criteria."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from labquest.db.models import Badge, User, UserBadge
from labquest.gamification.award_service import get_user
from labquest.gamification.badge_criteria import RuleContext, badge_qualifies
from labquest.gamification.badge_service import grant_badge
from labquest.gamification.events import commit_and_publish
from labquest.gamification.stats_service import compute_user_stats

logger = logging.getLogger(__name__)


class BadgeRulesEngine:
    """Grants unearned badges whose criteria a user satisfies.

    ``evaluate_all_users`` costs O(users x badges) and is meant for the
    periodic worker job, not the per-event path.
    """

    def __init__(self, db: AsyncSession, redis: object) -> None:
        self.db = db
        self.redis = redis
        self._badge_cache: list[Badge] | None = None

    async def _load_badges(self) -> list[Badge]:
        """Load and cache active badge definitions for this engine instance."""
        if self._badge_cache is None:
            result = await self.db.execute(
                select(Badge).where(Badge.is_active.is_(True)).order_by(Badge.id)
            )
            self._badge_cache = list(result.scalars().all())
        return self._badge_cache

    async def _held_badge_ids(self, user_id: int) -> set[int]:
        result = await self.db.execute(
            select(UserBadge.badge_id).where(UserBadge.user_id == user_id)
        )
        return set(result.scalars().all())

    async def evaluate_user(
        self,
        user_id: int,
        candidate_badges: list[Badge] | None = None,
    ) -> list[Badge]:
        """Grant every qualifying badge the user does not hold yet.

        Returns the newly granted badges and commits them.
        """
        user = await get_user(self.db, user_id)
        candidates = candidate_badges if candidate_badges is not None else await self._load_badges()
        held = await self._held_badge_ids(user_id)

        granted: list[Badge] = []
        stats = None
        for badge in candidates:
            if not badge.is_active or badge.id in held:
                continue
            if stats is None:
                stats = await compute_user_stats(self.db, user)
            ctx = RuleContext(db=self.db, user=user, stats=stats, badge=badge)
            if await badge_qualifies(ctx) and await grant_badge(self.db, self.redis, user_id, badge):
                granted.append(badge)

        await commit_and_publish(self.db, self.redis)
        if granted:
            logger.info("User %s earned badges: %s", user_id, [b.name for b in granted])
        return granted

    async def evaluate_all_users(self) -> dict[int, list[str]]:
        """Batch pass over every active user. Returns {user_id: [badge names]}."""
        result = await self.db.execute(
            select(User.id).where(User.is_active.is_(True)).order_by(User.id)
        )
        user_ids = list(result.scalars().all())
        badges = await self._load_badges()

        awarded: dict[int, list[str]] = {}
        for user_id in user_ids:
            granted = await self.evaluate_user(user_id, badges)
            if granted:
                awarded[user_id] = [b.name for b in granted]

        logger.info("Badge batch evaluated %d users, %d earned new badges", len(user_ids), len(awarded))
        return awarded
