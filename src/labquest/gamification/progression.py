"""Progression calculator: level, elo tier and reward formulas.

Pure functions only. Level and elo are always derived from accumulated
points (xp == points) and are never stored. Malformed xp input (negative,
NaN, infinity, None) is normalized to 0 instead of raising.
"""

from __future__ import annotations

import math
from datetime import date, datetime

from labquest.gamification.timeutils import as_utc

LEVEL_XP_STEP = 100
DEFAULT_TASK_POINTS = 10

# Descending by min_xp. The last row is the catch-all floor.
ELO_TIERS: list[dict] = [
    {"tier": "CHALLENGER", "min_xp": 10000},
    {"tier": "GRAO_MESTRE", "min_xp": 9000},
    {"tier": "MESTRE", "min_xp": 8000},
    {"tier": "DIAMANTE", "min_xp": 7000},
    {"tier": "OURO_I", "min_xp": 6500},
    {"tier": "OURO_II", "min_xp": 6000},
    {"tier": "OURO_III", "min_xp": 5500},
    {"tier": "PRATA_I", "min_xp": 5000},
    {"tier": "PRATA_II", "min_xp": 4500},
    {"tier": "PRATA_III", "min_xp": 4000},
    {"tier": "BRONZE_I", "min_xp": 3500},
    {"tier": "BRONZE_II", "min_xp": 3000},
    {"tier": "BRONZE_III", "min_xp": 2500},
    {"tier": "FERRO_I", "min_xp": 2000},
    {"tier": "FERRO_II", "min_xp": 1500},
    {"tier": "FERRO_III", "min_xp": 1000},
    {"tier": "MADEIRA_I", "min_xp": 500},
    {"tier": "MADEIRA_II", "min_xp": 0},
]

# Ascending rank, lowest tier first.
ELO_ORDER: list[str] = [row["tier"] for row in reversed(ELO_TIERS)]

ALCHEMIST_ARCHETYPE = "ALQUIMISTA"
ALCHEMIST_BASE_DISCOUNT = 0.05
ALCHEMIST_MAX_DISCOUNT = 0.22
ALCHEMIST_POINTS_PER_UNIT = 5000


def normalize_xp(xp: object) -> int:
    """Clamp any xp-like input to a non-negative integer."""
    if xp is None or isinstance(xp, bool):
        return 0
    try:
        value = float(xp)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(value) or value < 0:
        return 0
    return int(value)


def level_of(xp: object) -> int:
    return normalize_xp(xp) // LEVEL_XP_STEP


def elo_of(xp: object) -> str:
    value = normalize_xp(xp)
    for row in ELO_TIERS:
        if value >= row["min_xp"]:
            return row["tier"]
    return ELO_TIERS[-1]["tier"]


def elo_rank(tier: str | None) -> int:
    """Position of a tier in ascending order; unknown tiers rank lowest (-1)."""
    if not tier:
        return -1
    try:
        return ELO_ORDER.index(tier.upper())
    except ValueError:
        return -1


def compare_elo(a: str | None, b: str | None) -> int:
    """Return -1, 0 or 1 like a classic comparator."""
    ra, rb = elo_rank(a), elo_rank(b)
    return (ra > rb) - (ra < rb)


def meets_min_elo(tier: str, min_elo: str | None) -> bool:
    if not min_elo:
        return True
    return compare_elo(tier, min_elo) >= 0


def is_known_elo(tier: str | None) -> bool:
    return elo_rank(tier) >= 0


def progress_to_next_level(xp: object) -> int:
    """Percentage of the way from the current level floor to the next, in [0, 100]."""
    value = normalize_xp(xp)
    if value == 0:
        return 0
    floor = level_of(value) * LEVEL_XP_STEP
    pct = (value - floor) * 100 // LEVEL_XP_STEP
    return max(0, min(100, pct))


def compute_progression(
    user_id: int,
    points: object,
    coins: int = 0,
    trophies: int = 0,
    archetype: str | None = None,
    title: str | None = None,
    display_name: str | None = None,
) -> dict:
    """Build the progression snapshot returned to callers."""
    xp = normalize_xp(points)
    level = level_of(xp)
    return {
        "user_id": user_id,
        "points": xp,
        "xp": xp,
        "level": level,
        "elo": elo_of(xp),
        "coins": max(0, coins or 0),
        "trophies": max(0, trophies or 0),
        "archetype": archetype,
        "title": title,
        "display_name": display_name,
        "next_level_xp": (level + 1) * LEVEL_XP_STEP,
        "progress_to_next_level": progress_to_next_level(xp),
    }


# ---------------------------------------------------------------------------
# Source-specific point rules
# ---------------------------------------------------------------------------


def work_session_points(duration_seconds: object, completed_task_count: int) -> int:
    """10 base + up to 40 for duration (1 per 6 minutes) + up to 30 for tasks (5 each)."""
    hours = normalize_xp(duration_seconds) / 3600
    duration_bonus = min(40, math.floor(hours * 10))
    task_bonus = min(30, max(0, completed_task_count) * 5)
    return max(1, 10 + duration_bonus + task_bonus)


def days_late(due_date: datetime | date | None, completed_at: datetime | date | None) -> int:
    """Whole days past due, rounded up. 0 when on time, early, or undated."""
    due = as_utc(due_date)
    done = as_utc(completed_at)
    if due is None or done is None or done <= due:
        return 0
    return math.ceil((done - due).total_seconds() / 86400)


def task_completion_points(
    task_points: int | None,
    due_date: datetime | date | None = None,
    completed_at: datetime | date | None = None,
    default_points: int = DEFAULT_TASK_POINTS,
) -> dict:
    """Net task points after the late penalty (days_late * base), floored at 0."""
    base = default_points if task_points is None else max(0, int(task_points))
    late = days_late(due_date, completed_at)
    penalty = late * base
    return {
        "base_points": base,
        "days_late": late,
        "penalty": penalty,
        "points": max(0, base - penalty),
    }


def task_coins(points: int) -> int:
    if points <= 0:
        return 0
    return max(1, points // 2)


def work_session_coins(points: int) -> int:
    return max(2, math.floor(points * 0.75))


def chest_discount_rate(archetype: str | None, points: object) -> float:
    """Alchemists get 5% off plus 1% per 50 points, capped at 22%."""
    if not archetype or archetype.upper() != ALCHEMIST_ARCHETYPE:
        return 0.0
    rate = ALCHEMIST_BASE_DISCOUNT + normalize_xp(points) / ALCHEMIST_POINTS_PER_UNIT
    return min(ALCHEMIST_MAX_DISCOUNT, rate)


def discounted_unit_price(price_coins: int, discount_rate: float) -> int:
    return max(1, math.floor(price_coins * (1 - discount_rate)))
