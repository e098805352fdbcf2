"""Aggregate user statistics derived from the award ledger.

Badge criteria are tested against these numbers. Every figure comes from
ledger rows, so a task or session counted here was also rewarded exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from labquest.db.models import User
from labquest.gamification.award_service import get_or_create_gamification
from labquest.gamification.ledger import AwardSource, list_user_awards
from labquest.gamification.timeutils import as_utc, iso_week


@dataclass(frozen=True)
class UserStats:
    points: int = 0
    completed_tasks: int = 0
    projects: int = 0
    work_sessions: int = 0
    average_weekly_hours: float = 0.0
    max_consecutive_days: int = 0


def longest_streak(days: set[date]) -> int:
    """Length of the longest run of consecutive calendar days."""
    best = 0
    for day in days:
        if day - timedelta(days=1) in days:
            continue
        length = 1
        while day + timedelta(days=length) in days:
            length += 1
        best = max(best, length)
    return best


async def compute_user_stats(db: AsyncSession, user: User) -> UserStats:
    gam = await get_or_create_gamification(db, user.id)
    records = await list_user_awards(
        db,
        user.id,
        source_types=[AwardSource.TASK_COMPLETED, AwardSource.WORK_SESSION_COMPLETED],
    )

    tasks = 0
    sessions = 0
    session_seconds = 0
    projects: set[int] = set()
    active_days: set[date] = set()
    session_weeks: set[str] = set()

    for record in records:
        occurred = as_utc(record.occurred_at)
        active_days.add(occurred.date())
        if record.project_id is not None:
            projects.add(record.project_id)
        if record.source_type == AwardSource.TASK_COMPLETED.value:
            tasks += 1
        else:
            sessions += 1
            session_seconds += record.duration_seconds or 0
            session_weeks.add(iso_week(occurred))

    weekly_hours = 0.0
    if session_weeks:
        weekly_hours = round(session_seconds / 3600 / len(session_weeks), 2)

    return UserStats(
        points=gam.points,
        completed_tasks=tasks,
        projects=len(projects),
        work_sessions=sessions,
        average_weekly_hours=weekly_hours,
        max_consecutive_days=longest_streak(active_days),
    )
