"""Award ledger tests: exactly-once rewards and progression updates."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError
from sqlalchemy import func, select

from labquest.db.models import AwardRecord, Notification, QuestProgress, UserGamification
from labquest.gamification import award_service, chest_service, quest_service
from labquest.gamification.award_service import get_user_progression, grant_award, update_user_profile
from labquest.gamification.engine import GamificationEngine
from labquest.gamification.events import commit_and_publish
from labquest.gamification.exceptions import NotFoundError
from labquest.gamification.ledger import AwardSource, count_awards, has_award
from labquest.gamification.progression import chest_discount_rate, discounted_unit_price


async def _ledger_rows(db, user_id: int) -> int:
    result = await db.execute(select(func.count(AwardRecord.id)).where(AwardRecord.user_id == user_id))
    return result.scalar_one()


class TestGrantAward:
    """grant_award is idempotent per (user, source_type, source_id)."""

    @pytest.mark.asyncio
    async def test_first_grant_updates_balances(self, db_session, make_user):
        user = await make_user()
        result = await grant_award(
            db_session, None, user.id,
            source_type=AwardSource.TASK_COMPLETED,
            source_id=11,
            points=40,
            coins=20,
        )
        await db_session.commit()

        assert result["already_awarded"] is False
        assert result["points_awarded"] == 40
        assert result["xp_awarded"] == 40
        assert await has_award(db_session, user.id, AwardSource.TASK_COMPLETED, 11)

        progression = await get_user_progression(db_session, user.id)
        assert progression["points"] == 40
        assert progression["coins"] == 20

    @pytest.mark.asyncio
    async def test_duplicate_grant_is_noop(self, db_session, make_user):
        user = await make_user()
        for _ in range(3):
            result = await grant_award(
                db_session, None, user.id,
                source_type=AwardSource.WORK_SESSION_COMPLETED,
                source_id=5,
                points=25,
                coins=18,
            )
            await db_session.commit()

        assert result["already_awarded"] is True
        assert result["points_awarded"] == 0
        assert result["coins_awarded"] == 0
        assert await _ledger_rows(db_session, user.id) == 1

        progression = await get_user_progression(db_session, user.id)
        assert progression["points"] == 25
        assert progression["coins"] == 18

    @pytest.mark.asyncio
    async def test_same_source_id_different_type_both_count(self, db_session, make_user):
        user = await make_user()
        await grant_award(db_session, None, user.id, AwardSource.TASK_COMPLETED, 1, points=10)
        await grant_award(db_session, None, user.id, AwardSource.WORK_SESSION_COMPLETED, 1, points=10)
        await db_session.commit()

        assert await _ledger_rows(db_session, user.id) == 2
        assert await count_awards(db_session, user.id, AwardSource.TASK_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_hits_unique_constraint(self, db_session, make_user, monkeypatch):
        """A racing writer that passed the pre-check is stopped by the ledger key."""
        user = await make_user()

        async def _never_seen(*_args, **_kwargs):
            return False

        monkeypatch.setattr(award_service, "has_award", _never_seen)

        first = await grant_award(db_session, None, user.id, AwardSource.TASK_COMPLETED, 42, points=30)
        second = await grant_award(db_session, None, user.id, AwardSource.TASK_COMPLETED, 42, points=30)
        await db_session.commit()

        assert first["already_awarded"] is False
        assert second["already_awarded"] is True
        assert await _ledger_rows(db_session, user.id) == 1

        gam = (
            await db_session.execute(
                select(UserGamification)
                .where(UserGamification.user_id == user.id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        assert gam.points == 30

    @pytest.mark.asyncio
    async def test_negative_amounts_are_clamped(self, db_session, make_user):
        user = await make_user()
        result = await grant_award(db_session, None, user.id, AwardSource.MANUAL_ADJUSTMENT, 1, points=-50, coins=-3)
        assert result["points_awarded"] == 0
        assert result["coins_awarded"] == 0

    @pytest.mark.asyncio
    async def test_level_up_emits_notification(self, db_session, make_user):
        user = await make_user(points=90)
        result = await grant_award(db_session, None, user.id, AwardSource.TASK_COMPLETED, 3, points=15)
        await db_session.commit()

        assert result["leveled_up"] is True
        subtypes = (
            await db_session.execute(select(Notification.subtype).where(Notification.user_id == user.id))
        ).scalars().all()
        assert "level_up" in subtypes
        assert "elo_promoted" not in subtypes


class TestEngineAwards:
    """Collaborator commands through the engine facade."""

    @pytest.mark.asyncio
    async def test_task_completion_twice_awards_once(self, db_session, make_user):
        user = await make_user()
        engine = GamificationEngine(db_session, None)

        first = await engine.award_from_task_completion(user.id, task_id=9, task_points=100)
        second = await engine.award_from_task_completion(user.id, task_id=9, task_points=100)

        assert first["already_awarded"] is False
        assert first["points_awarded"] == 100
        assert first["progression"]["level"] == 1
        assert second["already_awarded"] is True
        assert second["points_awarded"] == 0
        assert second["progression"]["points"] == 100

    @pytest.mark.asyncio
    async def test_late_task_is_recorded_with_zero_points(self, db_session, make_user):
        user = await make_user()
        engine = GamificationEngine(db_session, None)
        due = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

        result = await engine.award_from_task_completion(
            user.id, task_id=2, task_points=100, due_date=due, completed_at=due + timedelta(days=2)
        )

        assert result["already_awarded"] is False
        assert result["points_awarded"] == 0
        assert result["scoring"]["task"]["days_late"] == 2
        assert await count_awards(db_session, user.id, AwardSource.TASK_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_work_session_award(self, db_session, make_user):
        user = await make_user()
        engine = GamificationEngine(db_session, None)

        result = await engine.award_from_work_session(
            user.id, work_session_id=77, duration_seconds=5400, completed_task_ids=[1, 2, 2], project_id=3
        )

        assert result["points_awarded"] == 35
        assert result["coins_awarded"] == 26
        assert result["scoring"]["work_session"]["completed_tasks"] == 2

    @pytest.mark.asyncio
    async def test_unknown_user_raises(self, db_session):
        engine = GamificationEngine(db_session, None)
        with pytest.raises(NotFoundError):
            await engine.award_from_task_completion(999, task_id=1, task_points=10)

    @pytest.mark.asyncio
    async def test_failure_mid_award_leaves_nothing_behind(self, db_session, make_user, monkeypatch):
        """Ledger row, balances, quest progress and queued events roll back together."""
        user = await make_user()
        await quest_service.create_quest(
            db_session,
            code="one_task",
            title="Uma task",
            quest_type="DAILY",
            scope="GLOBAL",
            metric="TASKS_COMPLETED",
            target=1,
        )
        record_event = quest_service.record_quest_event

        async def _fails_on_points(db, redis, user_id, metric, amount, project_id=None):
            if metric == "POINTS":
                raise RuntimeError("quest store unavailable")
            return await record_event(db, redis, user_id, metric, amount, project_id)

        monkeypatch.setattr(quest_service, "record_quest_event", _fails_on_points)
        redis = AsyncMock()
        engine = GamificationEngine(db_session, redis)

        with pytest.raises(RuntimeError):
            await engine.award_from_task_completion(user.id, task_id=4, task_points=150)

        assert await _ledger_rows(db_session, user.id) == 0
        progression = await get_user_progression(db_session, user.id)
        assert progression["points"] == 0
        assert progression["coins"] == 0
        progress_rows = await db_session.execute(
            select(func.count()).select_from(QuestProgress).where(QuestProgress.user_id == user.id)
        )
        assert progress_rows.scalar_one() == 0
        notifications = await db_session.execute(
            select(func.count()).select_from(Notification).where(Notification.user_id == user.id)
        )
        assert notifications.scalar_one() == 0
        redis.publish.assert_not_called()

        monkeypatch.undo()
        retry = await engine.award_from_task_completion(user.id, task_id=4, task_points=150)
        assert retry["already_awarded"] is False
        assert retry["progression"]["points"] == 150


class TestEventPublishing:
    """Pub/sub messages go out only after the award commits."""

    @pytest.mark.asyncio
    async def test_level_up_published_after_commit(self, db_session, make_user):
        user = await make_user(points=90)
        redis = AsyncMock()

        await GamificationEngine(db_session, redis).award_from_task_completion(user.id, task_id=1, task_points=20)

        channels = [call.args[0] for call in redis.publish.call_args_list]
        assert "pubsub:level_up" in channels

    @pytest.mark.asyncio
    async def test_rolled_back_events_are_never_published(self, db_session, make_user):
        user = await make_user(points=90)
        redis = AsyncMock()

        await grant_award(db_session, redis, user.id, AwardSource.TASK_COMPLETED, 1, points=20)
        redis.publish.assert_not_called()
        await db_session.rollback()
        await commit_and_publish(db_session, redis)

        redis.publish.assert_not_called()
        assert await _ledger_rows(db_session, user.id) == 0

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_the_award(self, db_session, make_user):
        user = await make_user(points=90)
        redis = AsyncMock()
        redis.publish.side_effect = RedisError("connection lost")

        result = await GamificationEngine(db_session, redis).award_from_task_completion(
            user.id, task_id=1, task_points=20
        )

        assert result["leveled_up"] is True
        assert result["progression"]["points"] == 110
        assert await _ledger_rows(db_session, user.id) == 1


class TestUserProfile:
    """Profile text fields: trimmed, truncated, blank clears."""

    @pytest.mark.asyncio
    async def test_update_trims_and_truncates(self, db_session, make_user):
        user = await make_user()

        result = await update_user_profile(
            db_session, user.id, display_name="  Ana Lab  ", archetype=" ALQUIMISTA ", title="x" * 100
        )

        assert result["display_name"] == "Ana Lab"
        assert result["archetype"] == "ALQUIMISTA"
        assert result["title"] == "x" * 64

    @pytest.mark.asyncio
    async def test_blank_clears_and_omitted_fields_are_kept(self, db_session, make_user):
        user = await make_user(archetype="ALQUIMISTA")
        await update_user_profile(db_session, user.id, title="Mentora")

        result = await update_user_profile(db_session, user.id, title="   ", display_name=None)

        assert result["title"] is None
        assert result["display_name"] is None
        assert result["archetype"] == "ALQUIMISTA"

    @pytest.mark.asyncio
    async def test_archetype_enables_alchemist_discount(self, db_session, make_user):
        user = await make_user(coins=1000, points=5000)
        chest = await chest_service.create_chest(
            db_session,
            code="iron",
            name="Iron",
            price_coins=100,
            drops=[{"item_key": "shield", "item_name": "Shield", "weight": 1}],
        )
        engine = GamificationEngine(db_session, None)

        await engine.update_user_profile(user.id, archetype="alquimista")
        result = await engine.open_chest(user.id, chest.id)

        assert result["spent_coins"] == discounted_unit_price(100, chest_discount_rate("alquimista", 5000))
        assert result["spent_coins"] < 100

    @pytest.mark.asyncio
    async def test_unknown_user(self, db_session):
        with pytest.raises(NotFoundError):
            await update_user_profile(db_session, 999, title="Mentora")
