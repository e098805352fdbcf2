"""Gamification arq worker: consumes lab events from Redis Streams.

Task and work-session completions published by the lab application are
turned into awards through the engine. Duplicate deliveries are harmless
because every award is keyed by its source id.
"""

from __future__ import annotations

import asyncio
import json
import logging

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession

from labquest.config import get_settings
from labquest.database import close_db, get_session, init_db
from labquest.gamification.engine import GamificationEngine
from labquest.gamification.exceptions import GamificationError
from labquest.gamification.schemas import TaskCompletedEvent, WorkSessionCompletedEvent

logger = logging.getLogger(__name__)

CONSUMER_GROUP = "gamification-consumers"

TASK_COMPLETED_STREAM = "lab:task_completed"
WORK_SESSION_COMPLETED_STREAM = "lab:work_session_completed"

STREAMS = [
    TASK_COMPLETED_STREAM,
    WORK_SESSION_COMPLETED_STREAM,
]


async def _get_db_session() -> AsyncSession:
    """Get a database session for the worker."""
    async for session in get_session():
        return session
    raise RuntimeError("Failed to get database session")


def parse_event(raw_data: dict) -> dict:
    """Decode a stream entry: JSON under ``data`` or flat string fields."""
    data_str = raw_data.get("data")
    if isinstance(data_str, str):
        try:
            return json.loads(data_str)
        except json.JSONDecodeError:
            pass
    return dict(raw_data)


async def dispatch_event(engine: GamificationEngine, stream: str, data: dict) -> dict:
    """Route one decoded event to the matching engine command."""
    if stream == TASK_COMPLETED_STREAM:
        task = TaskCompletedEvent.model_validate(data)
        return await engine.award_from_task_completion(**task.model_dump())
    if stream == WORK_SESSION_COMPLETED_STREAM:
        if isinstance(data.get("completed_task_ids"), str):
            data = {**data, "completed_task_ids": json.loads(data["completed_task_ids"] or "[]")}
        session = WorkSessionCompletedEvent.model_validate(data)
        return await engine.award_from_work_session(**session.model_dump())
    raise ValueError(f"Unknown stream: {stream}")


async def gamification_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize Redis + DB connections on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )

    for stream in STREAMS:
        try:
            await redis_client.xgroup_create(stream, CONSUMER_GROUP, id="0", mkstream=True)
        except aioredis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    ctx["redis"] = redis_client
    logger.info("Gamification worker started")


async def gamification_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Gamification worker shut down")


async def consume_lab_events(ctx: dict) -> None:  # type: ignore[type-arg]
    """Main consumer loop: reads lab events and awards progression."""
    redis_client: aioredis.Redis = ctx["redis"]
    consumer_name = get_settings().redis_stream_consumer_name
    streams = {s: ">" for s in STREAMS}

    while True:
        try:
            events = await redis_client.xreadgroup(
                groupname=CONSUMER_GROUP,
                consumername=consumer_name,
                streams=streams,
                count=100,
                block=5000,
            )
        except aioredis.ResponseError as e:
            logger.error("XREADGROUP error: %s", e)
            await asyncio.sleep(1)
            continue

        if not events:
            continue

        for stream_name, messages in events:
            stream_str = stream_name if isinstance(stream_name, str) else stream_name.decode()

            for msg_id, raw_data in messages:
                db = await _get_db_session()
                try:
                    engine = GamificationEngine(db, redis_client)
                    result = await dispatch_event(engine, stream_str, parse_event(raw_data))
                    if not result["already_awarded"]:
                        logger.info(
                            "Awarded %s points (stream=%s, event=%s, badges=%s)",
                            result["points_awarded"], stream_str, msg_id, result["badges_awarded"],
                        )
                except (GamificationError, KeyError, ValueError) as e:
                    # Malformed or unknown-user events are dropped, not retried.
                    logger.warning("Rejected %s from %s: %s", msg_id, stream_str, e)
                except Exception:
                    logger.exception("Failed to process %s from %s", msg_id, stream_str)
                    continue
                finally:
                    await db.close()

                await redis_client.xack(stream_str, CONSUMER_GROUP, msg_id)


async def badge_batch_evaluation(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: evaluate every badge for every active user."""
    redis_client: aioredis.Redis = ctx["redis"]
    db = await _get_db_session()
    try:
        awarded = await GamificationEngine(db, redis_client).evaluate_all_users()
        return len(awarded)
    finally:
        await db.close()


class GamificationWorkerSettings:
    """arq worker settings for the gamification consumer."""

    functions = [consume_lab_events, badge_batch_evaluation]
    cron_jobs = [
        cron(badge_batch_evaluation, minute={get_settings().badge_batch_minute}, run_at_startup=False),
    ]
    on_startup = gamification_startup
    on_shutdown = gamification_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 4
    job_timeout = 0  # consume_lab_events runs forever
    allow_abort_jobs = True
