"""Story arc resolver tests: gates, dependency graph and step rewards."""

from __future__ import annotations

import pytest
from sqlalchemy import select

from labquest.db.models import StoryArc
from labquest.gamification import story_arcs
from labquest.gamification.award_service import get_user_progression, grant_award
from labquest.gamification.engine import GamificationEngine
from labquest.gamification.exceptions import ConfigurationError
from labquest.gamification.ledger import AwardSource, count_awards
from labquest.gamification.story_arcs import (
    COMPLETED,
    IN_PROGRESS,
    LOCKED,
    STEP_SOURCE_STRIDE,
    StoryArcResolver,
    validate_arc_graph,
    validate_arc_metadata,
)


def _meta(steps, **gates):
    return {"steps": steps, **gates}


def _step(metric: str, target: int = 1, **reward):
    return {"title": f"{metric} {target}", "requirement": {"metric": metric, "target": target}, "reward": reward}


def _by_code(views: list[dict]) -> dict[str, dict]:
    return {v["code"]: v for v in views}


async def _arc_id(db, code: str) -> int:
    return (await db.execute(select(StoryArc.id).where(StoryArc.code == code))).scalar_one()


async def _two_chapter_story(db):
    await story_arcs.create_story_arc(
        db, code="origins", title="Origens", chapter=1,
        metadata=_meta([_step("TASKS_COMPLETED", 1, xp=10, coins=20)]),
    )
    await story_arcs.create_story_arc(
        db, code="ascent", title="Ascensão", chapter=2,
        metadata=_meta([_step("COINS", 1)], min_level=5, depends_on_arc_codes=["ORIGINS"]),
    )


class TestArcGraph:
    """Dependency validation via topological sort."""

    def test_dependencies_come_first(self):
        order = validate_arc_graph({"C": ["B"], "B": ["A"], "A": []})
        assert order == ["A", "B", "C"]

    def test_cycle_rejected(self):
        with pytest.raises(ConfigurationError) as excinfo:
            validate_arc_graph({"A": ["C"], "B": ["A"], "C": ["B"], "D": []})
        assert excinfo.value.details == {"arcs": ["A", "B", "C"]}

    def test_unknown_dependency_rejected(self):
        with pytest.raises(ConfigurationError):
            validate_arc_graph({"A": ["GHOST"]})


class TestArcMetadata:
    """Arc metadata normalization."""

    def test_normalizes(self):
        meta = validate_arc_metadata("A", _meta([_step("level", 3)], min_elo="ferro_iii", depends_on_arc_codes=["b"]))
        assert meta["total_steps"] == 1
        assert meta["min_elo"] == "FERRO_III"
        assert meta["depends_on_arc_codes"] == ["B"]
        assert meta["steps"][0]["requirement"] == {"metric": "LEVEL", "target": 3}

    @pytest.mark.parametrize(
        "metadata",
        [
            {"steps": []},
            _meta([_step("LEVEL")], total_steps=2),
            _meta([_step("KARMA")]),
            _meta([{"requirement": {"metric": "ITEM_OWNED"}}]),
            _meta([_step("LEVEL")], min_elo="PLATINA"),
            _meta([_step("LEVEL")], depends_on_arc_codes=["A"]),
        ],
    )
    def test_rejects_bad_metadata(self, metadata):
        with pytest.raises(ConfigurationError):
            validate_arc_metadata("A", metadata)

    def test_step_count_stays_below_ledger_stride(self):
        assert len(validate_arc_metadata("A", _meta([_step("LEVEL")] * (STEP_SOURCE_STRIDE - 1)))["steps"]) == 999
        with pytest.raises(ConfigurationError) as exc:
            validate_arc_metadata("A", _meta([_step("LEVEL")] * STEP_SOURCE_STRIDE))
        assert exc.value.details == {"steps": 1000, "max_steps": 999}


class TestResolve:
    """Unlocking and advancing arcs for a user."""

    @pytest.mark.asyncio
    async def test_locked_until_dependency_and_level(self, db_session, make_user):
        user = await make_user()
        await _two_chapter_story(db_session)
        engine = GamificationEngine(db_session, None)

        arcs = _by_code(await engine.resolve_arcs_for_user(user.id))
        assert arcs["ORIGINS"]["status"] == IN_PROGRESS
        assert arcs["ORIGINS"]["next_objective"] == "Complete 1 task(s)"
        assert arcs["ASCENT"]["status"] == LOCKED
        assert arcs["ASCENT"]["unlock_requirement"] == "Complete arc ORIGINS; Level 5+"

        await engine.award_from_task_completion(user.id, task_id=1, task_points=10)
        arcs = _by_code(await engine.resolve_arcs_for_user(user.id))
        assert arcs["ORIGINS"]["status"] == COMPLETED
        assert arcs["ORIGINS"]["completed_steps"] == 1
        assert arcs["ASCENT"]["status"] == LOCKED
        assert arcs["ASCENT"]["unlock_requirement"] == "Level 5+"

        await grant_award(db_session, None, user.id, AwardSource.MANUAL_ADJUSTMENT, 1, points=500)
        await db_session.commit()
        arcs = _by_code(await engine.resolve_arcs_for_user(user.id))
        assert arcs["ASCENT"]["status"] == COMPLETED
        assert arcs["ASCENT"]["unlock_requirement"] is None

    @pytest.mark.asyncio
    async def test_step_reward_paid_once(self, db_session, make_user):
        user = await make_user()
        await _two_chapter_story(db_session)
        engine = GamificationEngine(db_session, None)
        await engine.award_from_task_completion(user.id, task_id=1, task_points=10)

        for _ in range(3):
            await engine.resolve_arcs_for_user(user.id)

        progression = await get_user_progression(db_session, user.id)
        assert progression["points"] == 20
        assert await count_awards(db_session, user.id, AwardSource.STORY_STEP_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_item_reward_lands_in_inventory(self, db_session, make_user):
        user = await make_user(points=100)
        await story_arcs.create_story_arc(
            db_session, code="relic", title="Relíquia",
            metadata=_meta([_step("LEVEL", 1, item_key="stamina-potion", item_name="Stamina Potion", item_quantity=2)]),
        )
        engine = GamificationEngine(db_session, None)

        arcs = _by_code(await engine.resolve_arcs_for_user(user.id))

        assert arcs["RELIC"]["status"] == COMPLETED
        inventory = await engine.list_inventory(user.id)
        assert [(i.item_key, i.quantity, i.source_type) for i in inventory] == [("stamina-potion", 2, "STORY_ARC")]

    @pytest.mark.asyncio
    async def test_inactive_arc_hidden_and_locks_dependents(self, db_session, make_user):
        user = await make_user(points=600)
        await _two_chapter_story(db_session)
        origins_id = await _arc_id(db_session, "ORIGINS")
        await story_arcs.update_story_arc(db_session, origins_id, is_active=False)

        arcs = _by_code(await StoryArcResolver(db_session, None).resolve_arcs_for_user(user.id))

        assert "ORIGINS" not in arcs
        assert arcs["ASCENT"]["status"] == LOCKED

    @pytest.mark.asyncio
    async def test_stored_cycle_fails_loudly(self, db_session, make_user):
        user = await make_user()
        for code, dep in (("LOOP_A", "LOOP_B"), ("LOOP_B", "LOOP_A")):
            db_session.add(StoryArc(
                code=code,
                title=code,
                chapter=1,
                is_active=True,
                arc_metadata=_meta([_step("LEVEL", 0)], depends_on_arc_codes=[dep]),
            ))
        await db_session.commit()

        with pytest.raises(ConfigurationError):
            await StoryArcResolver(db_session, None).resolve_arcs_for_user(user.id)


class TestArcAdministration:
    """Writes keep the dependency graph acyclic."""

    @pytest.mark.asyncio
    async def test_create_with_unknown_dependency_rejected(self, db_session):
        with pytest.raises(ConfigurationError):
            await story_arcs.create_story_arc(
                db_session, code="orphan", title="Órfão",
                metadata=_meta([_step("LEVEL")], depends_on_arc_codes=["MISSING"]),
            )

    @pytest.mark.asyncio
    async def test_update_introducing_cycle_rejected(self, db_session):
        await _two_chapter_story(db_session)
        origins_id = await _arc_id(db_session, "ORIGINS")

        with pytest.raises(ConfigurationError):
            await story_arcs.update_story_arc(
                db_session, origins_id,
                metadata=_meta([_step("LEVEL")], depends_on_arc_codes=["ASCENT"]),
            )

    @pytest.mark.asyncio
    async def test_duplicate_code_rejected(self, db_session):
        await _two_chapter_story(db_session)
        with pytest.raises(ConfigurationError):
            await story_arcs.create_story_arc(
                db_session, code="Origins", title="Again", metadata=_meta([_step("LEVEL")])
            )
