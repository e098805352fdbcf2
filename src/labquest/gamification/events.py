"""Notification-worthy events: persisted row + best-effort Redis broadcast."""

from __future__ import annotations

import json
import logging

from redis.exceptions import RedisError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

from labquest.db.models import Notification
from labquest.gamification.timeutils import utcnow

logger = logging.getLogger(__name__)

PENDING_PUBLISH_KEY = "labquest.pending_publish"


@event.listens_for(Session, "after_soft_rollback")
def _discard_pending_publish(session: Session, previous_transaction: SessionTransaction) -> None:
    """Events from a rolled-back transaction are never broadcast."""
    session.info.pop(PENDING_PUBLISH_KEY, None)


async def emit_event(
    db: AsyncSession,
    redis: object,
    user_id: int,
    subtype: str,
    title: str,
    description: str | None = None,
    payload: dict | None = None,
) -> Notification:
    """Add a notification row to the session and queue a pubsub:<subtype> message.

    The row commits with the caller's transaction. The message is only
    published by commit_and_publish once that transaction has committed.
    """
    payload = payload or {}
    notification = Notification(
        user_id=user_id,
        type="gamification",
        subtype=subtype,
        title=title,
        description=description,
        notification_metadata=payload,
        created_at=utcnow(),
    )
    db.add(notification)

    if redis is not None:
        db.info.setdefault(PENDING_PUBLISH_KEY, []).append(
            (f"pubsub:{subtype}", json.dumps({"user_id": user_id, **payload}, default=str))
        )

    return notification


async def commit_and_publish(db: AsyncSession, redis: object) -> None:
    """Commit the session, then broadcast the events queued by emit_event.

    Publishing failures are logged and never undo the committed work.
    """
    await db.commit()
    pending = db.info.pop(PENDING_PUBLISH_KEY, [])
    if redis is None:
        return
    for channel, message in pending:
        try:
            await redis.publish(channel, message)  # type: ignore[union-attr]
        except (RedisError, OSError):
            logger.warning("Failed to publish on %s", channel, exc_info=True)
