"""HTTP-level tests for the gamification API, including error payloads."""

from __future__ import annotations

import pytest

ARC_STEPS = {"steps": [{"title": "Primeira", "requirement": {"metric": "TASKS_COMPLETED", "target": 1}}]}


class TestEvents:
    """Collaborator event endpoints."""

    @pytest.mark.asyncio
    async def test_task_completed_is_idempotent(self, client, make_user):
        user = await make_user()
        body = {"user_id": user.id, "task_id": 10, "task_points": 40, "project_id": 1}

        first = await client.post("/api/v1/events/task-completed", json=body)
        second = await client.post("/api/v1/events/task-completed", json=body)

        assert first.status_code == 200
        assert first.json()["points_awarded"] == 40
        assert first.json()["already_awarded"] is False
        assert second.status_code == 200
        assert second.json()["already_awarded"] is True
        assert second.json()["progression"]["points"] == 40

    @pytest.mark.asyncio
    async def test_work_session_completed(self, client, make_user):
        user = await make_user()
        resp = await client.post(
            "/api/v1/events/work-session-completed",
            json={"user_id": user.id, "work_session_id": 3, "duration_seconds": 5400, "completed_task_ids": [1, 2]},
        )
        assert resp.status_code == 200
        assert resp.json()["points_awarded"] == 35

    @pytest.mark.asyncio
    async def test_unknown_user_is_404(self, client):
        resp = await client.post("/api/v1/events/task-completed", json={"user_id": 999, "task_id": 1})
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"
        assert resp.json()["details"] == {"user_id": 999}

    @pytest.mark.asyncio
    async def test_validation_error_shape(self, client):
        resp = await client.post("/api/v1/events/work-session-completed", json={"user_id": 1, "duration_seconds": -5})
        assert resp.status_code == 422
        data = resp.json()
        assert data["error"] == "validation_error"
        assert {tuple(e["loc"])[-1] for e in data["errors"]} >= {"work_session_id", "duration_seconds"}


class TestProgressionEndpoint:

    @pytest.mark.asyncio
    async def test_progression_snapshot(self, client, make_user):
        user = await make_user(points=1234, coins=40)
        resp = await client.get(f"/api/v1/users/{user.id}/progression")
        assert resp.status_code == 200
        data = resp.json()
        assert data["level"] == 12
        assert data["elo"] == "FERRO_III"
        assert data["coins"] == 40

    @pytest.mark.asyncio
    async def test_profile_update(self, client, make_user):
        user = await make_user(archetype="GUERREIRO")

        resp = await client.patch(
            f"/api/v1/users/{user.id}/profile", json={"display_name": "  Ana  ", "title": ""}
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["display_name"] == "Ana"
        assert data["title"] is None
        assert data["archetype"] == "GUERREIRO"
        snapshot = await client.get(f"/api/v1/users/{user.id}/progression")
        assert snapshot.json()["display_name"] == "Ana"

    @pytest.mark.asyncio
    async def test_profile_update_unknown_user(self, client):
        resp = await client.patch("/api/v1/users/999/profile", json={"archetype": "ALQUIMISTA"})
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"


class TestBadgeEndpoints:

    @pytest.mark.asyncio
    async def test_badge_lifecycle(self, client, make_user):
        user = await make_user()
        created = await client.post(
            "/api/v1/badges", json={"name": "Mentoria", "category": "social", "criteria": {}}
        )
        assert created.status_code == 201
        badge_id = created.json()["id"]

        awarded = await client.post(f"/api/v1/badges/{badge_id}/award", json={"user_id": user.id})
        assert awarded.status_code == 201
        assert awarded.json()["badge"]["name"] == "Mentoria"

        again = await client.post(f"/api/v1/badges/{badge_id}/award", json={"user_id": user.id})
        assert again.status_code == 409
        assert again.json()["error"] == "invalid_state"

        held = await client.get(f"/api/v1/users/{user.id}/badges")
        assert [b["badge_id"] for b in held.json()] == [badge_id]

        deleted = await client.delete(f"/api/v1/badges/{badge_id}")
        assert deleted.json()["is_active"] is False
        assert (await client.get("/api/v1/badges")).json() == []
        assert len((await client.get("/api/v1/badges", params={"include_inactive": True})).json()) == 1

    @pytest.mark.asyncio
    async def test_bad_criteria_is_422(self, client):
        resp = await client.post(
            "/api/v1/badges",
            json={"name": "Lua", "category": "special", "criteria": {"special_condition": {"kind": "MOON"}}},
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "configuration_error"

    @pytest.mark.asyncio
    async def test_missing_badge_is_404(self, client):
        resp = await client.get("/api/v1/badges/404")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_evaluation_endpoints(self, client, make_user):
        user = await make_user()
        await client.post("/api/v1/badges", json={"name": "Uma Task", "category": "achievement", "criteria": {"tasks": 1}})
        await client.post("/api/v1/events/task-completed", json={"user_id": user.id, "task_id": 1})

        per_user = await client.post(f"/api/v1/users/{user.id}/badges/evaluate")
        batch = await client.post("/api/v1/badges/evaluate-all")

        assert per_user.json() == {"user_id": user.id, "granted": []}
        assert batch.json() == {"users_awarded": 0, "awarded": {}}
        held = await client.get(f"/api/v1/users/{user.id}/badges")
        assert [b["badge"]["name"] for b in held.json()] == ["Uma Task"]


class TestQuestEndpoints:

    @pytest.mark.asyncio
    async def test_quest_flow(self, client, make_user):
        user = await make_user()
        created = await client.post(
            "/api/v1/quests",
            json={
                "code": "daily_one",
                "title": "Uma task",
                "quest_type": "DAILY",
                "scope": "GLOBAL",
                "metric": "TASKS_COMPLETED",
                "target": 1,
                "reward_xp": 5,
                "reward_coins": 7,
            },
        )
        assert created.status_code == 201
        quest_id = created.json()["id"]

        early = await client.post(f"/api/v1/users/{user.id}/quests/{quest_id}/claim")
        assert early.status_code == 409

        listed = await client.get(f"/api/v1/users/{user.id}/quests")
        assert listed.json()[0]["status"] == "NOT_STARTED"

        await client.post("/api/v1/events/task-completed", json={"user_id": user.id, "task_id": 1, "task_points": 10})
        claimed = await client.post(f"/api/v1/users/{user.id}/quests/{quest_id}/claim")
        assert claimed.status_code == 200
        assert claimed.json()["reward"] == {"xp": 5, "coins": 7, "trophies": 0}
        assert claimed.json()["progression"]["points"] == 15

        twice = await client.post(f"/api/v1/users/{user.id}/quests/{quest_id}/claim")
        assert twice.status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_quest_is_422(self, client):
        resp = await client.post(
            "/api/v1/quests",
            json={"code": "x", "title": "X", "quest_type": "HOURLY", "scope": "GLOBAL", "metric": "POINTS", "target": 1},
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "configuration_error"


class TestChestEndpoints:

    async def _create_chest(self, client) -> int:
        resp = await client.post(
            "/api/v1/chests",
            json={
                "code": "iron",
                "name": "Iron",
                "price_coins": 120,
                "drops": [{"item_key": "shield", "item_name": "Shield", "weight": 1}],
            },
        )
        assert resp.status_code == 201
        return resp.json()["id"]

    @pytest.mark.asyncio
    async def test_open_chest(self, client, make_user):
        user = await make_user(coins=300)
        chest_id = await self._create_chest(client)

        resp = await client.post(f"/api/v1/users/{user.id}/chests/{chest_id}/open", json={"quantity": 2})

        assert resp.status_code == 200
        assert resp.json()["spent_coins"] == 240
        assert resp.json()["coins"] == 60
        inventory = await client.get(f"/api/v1/users/{user.id}/inventory")
        assert [(i["item_key"], i["quantity"]) for i in inventory.json()] == [("shield", 2)]

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_402(self, client, make_user):
        user = await make_user(coins=10)
        chest_id = await self._create_chest(client)

        resp = await client.post(f"/api/v1/users/{user.id}/chests/{chest_id}/open")

        assert resp.status_code == 402
        assert resp.json()["error"] == "insufficient_funds"
        assert resp.json()["details"] == {"required": 120, "available": 10}

    @pytest.mark.asyncio
    async def test_catalog(self, client):
        await self._create_chest(client)
        resp = await client.get("/api/v1/chests")
        assert resp.status_code == 200
        assert resp.json()[0]["drops"][0]["chance"] == 100.0


class TestStoryArcEndpoints:

    @pytest.mark.asyncio
    async def test_create_and_resolve(self, client, make_user):
        user = await make_user()
        created = await client.post(
            "/api/v1/story-arcs", json={"code": "origins", "title": "Origens", "metadata": ARC_STEPS}
        )
        assert created.status_code == 201
        assert created.json()["code"] == "ORIGINS"
        assert created.json()["metadata"]["total_steps"] == 1

        arcs = await client.get(f"/api/v1/users/{user.id}/story-arcs")
        assert arcs.json()[0]["status"] == "IN_PROGRESS"

    @pytest.mark.asyncio
    async def test_cyclic_update_is_422(self, client):
        first = await client.post("/api/v1/story-arcs", json={"code": "A", "title": "A", "metadata": ARC_STEPS})
        await client.post(
            "/api/v1/story-arcs",
            json={"code": "B", "title": "B", "metadata": {**ARC_STEPS, "depends_on_arc_codes": ["A"]}},
        )

        resp = await client.patch(
            f"/api/v1/story-arcs/{first.json()['id']}",
            json={"metadata": {**ARC_STEPS, "depends_on_arc_codes": ["B"]}},
        )

        assert resp.status_code == 422
        assert resp.json()["error"] == "configuration_error"
