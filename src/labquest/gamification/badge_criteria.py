"""Declarative badge criteria and the special-condition rule registry.

Criteria are a JSON object. Numeric fields are minimums combined with AND:

    {"tasks": 50, "projects": 3, "special_condition": {"kind": "STREAK", "min_days": 7}}

``special_condition`` is a tagged variant resolved through SPECIAL_CONDITIONS.
New kinds are added with the ``special_condition`` decorator; their parameter
schema is checked when an administrator saves a badge.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from labquest.db.models import Badge, User, UserBadge
from labquest.gamification.exceptions import ConfigurationError
from labquest.gamification.stats_service import UserStats

logger = logging.getLogger(__name__)

BADGE_CATEGORIES = ("achievement", "milestone", "special", "social")

# criteria key -> UserStats attribute
CRITERIA_FIELDS: dict[str, str] = {
    "points": "points",
    "tasks": "completed_tasks",
    "projects": "projects",
    "work_sessions": "work_sessions",
    "weekly_hours": "average_weekly_hours",
    "consecutive_days": "max_consecutive_days",
}


@dataclass
class RuleContext:
    db: AsyncSession
    user: User
    stats: UserStats
    badge: Badge


@dataclass
class SpecialConditionRule:
    kind: str
    evaluate: Callable[[RuleContext, dict], Awaitable[bool]]
    params: dict[str, type] = field(default_factory=dict)


SPECIAL_CONDITIONS: dict[str, SpecialConditionRule] = {}


def special_condition(kind: str, **params: type) -> Callable:
    """Register an evaluator for a special-condition kind."""

    def decorator(fn: Callable[[RuleContext, dict], Awaitable[bool]]) -> Callable:
        SPECIAL_CONDITIONS[kind] = SpecialConditionRule(kind=kind, evaluate=fn, params=params)
        return fn

    return decorator


@special_condition("FIRST_TO_REACH", metric=str, threshold=float)
async def _first_to_reach(ctx: RuleContext, cond: dict) -> bool:
    """Only the first user to hit the threshold holds the badge."""
    value = getattr(ctx.stats, CRITERIA_FIELDS[cond["metric"]])
    if value < cond["threshold"]:
        return False
    holders = await ctx.db.execute(
        select(func.count(UserBadge.id)).where(UserBadge.badge_id == ctx.badge.id)
    )
    return holders.scalar_one() == 0


@special_condition("STREAK", min_days=int)
async def _streak(ctx: RuleContext, cond: dict) -> bool:
    return ctx.stats.max_consecutive_days >= cond["min_days"]


@special_condition("HAS_ROLE", role=str)
async def _has_role(ctx: RuleContext, cond: dict) -> bool:
    wanted = cond["role"].lower()
    return any(str(role).lower() == wanted for role in ctx.user.roles or [])


@special_condition("PERFECT_WEEK")
async def _perfect_week(ctx: RuleContext, cond: dict) -> bool:
    """Average weekly hours meet the user's own weekly commitment."""
    commitment = ctx.user.week_hours or 0
    return commitment > 0 and ctx.stats.average_weekly_hours >= commitment


def _validate_special(cond: Any) -> dict:
    if not isinstance(cond, dict) or not isinstance(cond.get("kind"), str):
        raise ConfigurationError("special_condition must be an object with a 'kind'")
    kind = cond["kind"].upper()
    rule = SPECIAL_CONDITIONS.get(kind)
    if rule is None:
        raise ConfigurationError(
            f"Unknown special condition kind: {cond['kind']}",
            {"known_kinds": sorted(SPECIAL_CONDITIONS)},
        )

    normalized: dict[str, Any] = {"kind": kind}
    for name, expected in rule.params.items():
        if name not in cond:
            raise ConfigurationError(f"{kind} requires '{name}'")
        value = cond[name]
        try:
            value = expected(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"{kind}.{name} must be {expected.__name__}") from exc
        if expected in (int, float) and value <= 0:
            raise ConfigurationError(f"{kind}.{name} must be positive")
        if expected is str and not value.strip():
            raise ConfigurationError(f"{kind}.{name} must not be empty")
        normalized[name] = value

    if kind == "FIRST_TO_REACH" and normalized["metric"] not in CRITERIA_FIELDS:
        raise ConfigurationError(
            f"FIRST_TO_REACH metric must be one of {sorted(CRITERIA_FIELDS)}",
        )
    return normalized


def validate_criteria(criteria: dict | None) -> dict:
    """Normalize admin-supplied criteria or raise ConfigurationError."""
    criteria = criteria or {}
    unknown = set(criteria) - set(CRITERIA_FIELDS) - {"special_condition"}
    if unknown:
        raise ConfigurationError(f"Unknown criteria fields: {sorted(unknown)}")

    normalized: dict[str, Any] = {}
    for key in CRITERIA_FIELDS:
        value = criteria.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ConfigurationError(f"Criteria field '{key}' must be a non-negative number")
        normalized[key] = value

    if criteria.get("special_condition") is not None:
        normalized["special_condition"] = _validate_special(criteria["special_condition"])
    return normalized


def numeric_criteria(criteria: dict) -> dict[str, float]:
    return {k: criteria[k] for k in CRITERIA_FIELDS if criteria.get(k) is not None}


async def badge_qualifies(ctx: RuleContext) -> bool:
    """AND every numeric minimum, then the special condition if present.

    A badge with no criteria at all is manual-only and never auto-granted.
    """
    criteria = ctx.badge.criteria or {}
    minimums = numeric_criteria(criteria)
    special = criteria.get("special_condition")
    if not minimums and not special:
        return False

    for key, minimum in minimums.items():
        if getattr(ctx.stats, CRITERIA_FIELDS[key]) < minimum:
            return False

    if special:
        kind = str(special.get("kind", "")).upper()
        rule = SPECIAL_CONDITIONS.get(kind)
        if rule is None:
            logger.warning("Badge %s has unknown special condition %r", ctx.badge.id, kind)
            return False
        return await rule.evaluate(ctx, special)
    return True
