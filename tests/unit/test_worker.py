"""Event worker decoding and dispatch."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from labquest.gamification.engine import GamificationEngine
from labquest.gamification.worker import (
    TASK_COMPLETED_STREAM,
    WORK_SESSION_COMPLETED_STREAM,
    dispatch_event,
    parse_event,
)


class TestParseEvent:
    """Stream entries carry JSON under 'data' or flat fields."""

    def test_json_payload(self):
        raw = {"data": json.dumps({"user_id": 1, "task_id": 2})}
        assert parse_event(raw) == {"user_id": 1, "task_id": 2}

    def test_flat_fields(self):
        raw = {"user_id": "1", "task_id": "2"}
        assert parse_event(raw) == raw

    def test_invalid_json_falls_back_to_fields(self):
        raw = {"data": "{not json", "user_id": "3"}
        assert parse_event(raw) == raw


class TestDispatchEvent:
    """Decoded events reach the engine with typed arguments."""

    @pytest.mark.asyncio
    async def test_task_completed(self, db_session, make_user):
        user = await make_user()
        engine = GamificationEngine(db_session, None)
        data = {
            "user_id": str(user.id),
            "task_id": "15",
            "task_points": "30",
            "due_date": "2026-05-01T12:00:00+00:00",
            "completed_at": datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc).isoformat(),
        }

        result = await dispatch_event(engine, TASK_COMPLETED_STREAM, data)
        again = await dispatch_event(engine, TASK_COMPLETED_STREAM, data)

        assert result["points_awarded"] == 30
        assert again["already_awarded"] is True

    @pytest.mark.asyncio
    async def test_work_session_with_json_task_ids(self, db_session, make_user):
        user = await make_user()
        engine = GamificationEngine(db_session, None)
        data = {
            "user_id": str(user.id),
            "work_session_id": "4",
            "duration_seconds": "5400",
            "completed_task_ids": "[1, 2]",
        }

        result = await dispatch_event(engine, WORK_SESSION_COMPLETED_STREAM, data)

        assert result["points_awarded"] == 35

    @pytest.mark.asyncio
    async def test_malformed_event_rejected(self, db_session):
        engine = GamificationEngine(db_session, None)
        with pytest.raises(ValidationError):
            await dispatch_event(engine, TASK_COMPLETED_STREAM, {"user_id": "abc"})

    @pytest.mark.asyncio
    async def test_unknown_stream(self, db_session):
        engine = GamificationEngine(db_session, None)
        with pytest.raises(ValueError):
            await dispatch_event(engine, "lab:unknown", {})
