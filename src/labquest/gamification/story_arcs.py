"""Story arc unlock resolver.

An arc is LOCKED for a user until its level/elo gate passes and every arc in
``depends_on_arc_codes`` is COMPLETED for that user. Unlocked arcs advance
through their steps in order; each newly met step pays its reward through the
award ledger. COMPLETED is sticky.

The dependency graph is validated with a topological sort whenever arcs are
written. Resolution memoizes statuses per call and keeps a visiting-set guard
so a bad graph that slipped into storage fails loudly instead of recursing.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from labquest.db.models import InventoryItem, Quest, QuestProgress, StoryArc, StoryArcProgress
from labquest.db.upsert import insert_for
from labquest.gamification.award_service import get_or_create_gamification, get_user, grant_award
from labquest.gamification.chest_service import add_inventory_item
from labquest.gamification.events import commit_and_publish, emit_event
from labquest.gamification.exceptions import ConfigurationError, NotFoundError
from labquest.gamification.ledger import AwardSource, count_awards
from labquest.gamification.progression import elo_of, is_known_elo, level_of, meets_min_elo
from labquest.gamification.timeutils import as_utc, utcnow, within_window

logger = logging.getLogger(__name__)

LOCKED = "LOCKED"
IN_PROGRESS = "IN_PROGRESS"
COMPLETED = "COMPLETED"

STEP_METRICS = ("LEVEL", "TASKS_COMPLETED", "QUESTS_CLAIMED", "ITEM_OWNED", "COINS")

# Ledger source_id for a step reward is arc_id * STEP_SOURCE_STRIDE + step number.
STEP_SOURCE_STRIDE = 1000


# ---------------------------------------------------------------------------
# Configuration validation
# ---------------------------------------------------------------------------


def _validate_requirement(req: Any, where: str) -> dict:
    if not isinstance(req, dict):
        raise ConfigurationError(f"{where}: requirement must be an object")
    metric = str(req.get("metric", "")).upper()
    if metric not in STEP_METRICS:
        raise ConfigurationError(f"{where}: unknown metric {req.get('metric')!r}", {"allowed": list(STEP_METRICS)})
    target = req.get("target", 1)
    if not isinstance(target, (int, float)) or target <= 0:
        raise ConfigurationError(f"{where}: target must be positive")
    normalized: dict[str, Any] = {"metric": metric, "target": target}
    if metric == "ITEM_OWNED":
        if not req.get("item_key"):
            raise ConfigurationError(f"{where}: ITEM_OWNED requires item_key")
        normalized["item_key"] = req["item_key"]
    if metric == "QUESTS_CLAIMED" and req.get("quest_code"):
        normalized["quest_code"] = str(req["quest_code"]).upper()
    return normalized


def _validate_reward(reward: Any, where: str) -> dict:
    reward = reward or {}
    if not isinstance(reward, dict):
        raise ConfigurationError(f"{where}: reward must be an object")
    normalized: dict[str, Any] = {}
    for key in ("xp", "coins", "trophies"):
        value = reward.get(key, 0) or 0
        if value < 0:
            raise ConfigurationError(f"{where}: reward {key} must not be negative")
        normalized[key] = int(value)
    if reward.get("item_key"):
        normalized["item_key"] = reward["item_key"]
        normalized["item_name"] = reward.get("item_name") or reward["item_key"]
        normalized["item_rarity"] = reward.get("item_rarity", "common")
        normalized["item_quantity"] = max(1, int(reward.get("item_quantity", 1)))
    return normalized


def validate_arc_metadata(code: str, metadata: dict | None) -> dict:
    """Normalize arc metadata (gates, dependencies, steps) or raise ConfigurationError."""
    metadata = metadata or {}
    steps_in = metadata.get("steps") or []
    if not steps_in:
        raise ConfigurationError(f"Arc {code} must define at least one step")
    if len(steps_in) >= STEP_SOURCE_STRIDE:
        raise ConfigurationError(
            f"Arc {code} has too many steps",
            {"steps": len(steps_in), "max_steps": STEP_SOURCE_STRIDE - 1},
        )

    steps = []
    for index, step in enumerate(steps_in, start=1):
        where = f"Arc {code} step {index}"
        steps.append({
            "title": step.get("title") or f"Step {index}",
            "requirement": _validate_requirement(step.get("requirement"), where),
            "reward": _validate_reward(step.get("reward"), where),
        })

    total_steps = metadata.get("total_steps", len(steps))
    if total_steps != len(steps):
        raise ConfigurationError(f"Arc {code}: total_steps={total_steps} but {len(steps)} steps defined")

    min_level = metadata.get("min_level", 0) or 0
    if min_level < 0:
        raise ConfigurationError(f"Arc {code}: min_level must not be negative")
    min_elo = metadata.get("min_elo")
    if min_elo and not is_known_elo(min_elo):
        raise ConfigurationError(f"Arc {code}: unknown elo tier {min_elo}")

    depends_on = sorted({str(c).upper() for c in metadata.get("depends_on_arc_codes") or []})
    if code in depends_on:
        raise ConfigurationError(f"Arc {code} cannot depend on itself")

    return {
        "total_steps": total_steps,
        "min_level": min_level,
        "min_elo": min_elo.upper() if min_elo else None,
        "depends_on_arc_codes": depends_on,
        "steps": steps,
    }


def validate_arc_graph(graph: dict[str, list[str]]) -> list[str]:
    """Topologically sort arc codes (dependencies first).

    Raises ConfigurationError on an unknown dependency or a cycle.
    """
    for code, deps in graph.items():
        missing = [d for d in deps if d not in graph]
        if missing:
            raise ConfigurationError(f"Arc {code} depends on unknown arcs: {missing}", {"arc": code})

    indegree = {code: len(set(deps)) for code, deps in graph.items()}
    dependents: dict[str, list[str]] = {code: [] for code in graph}
    for code, deps in graph.items():
        for dep in set(deps):
            dependents[dep].append(code)

    queue = deque(sorted(code for code, n in indegree.items() if n == 0))
    order: list[str] = []
    while queue:
        code = queue.popleft()
        order.append(code)
        for child in sorted(dependents[code]):
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)

    if len(order) != len(graph):
        cyclic = sorted(code for code, n in indegree.items() if n > 0)
        raise ConfigurationError(f"Cyclic story arc dependencies: {cyclic}", {"arcs": cyclic})
    return order


def _arc_graph(arcs: list[StoryArc]) -> dict[str, list[str]]:
    return {arc.code: list((arc.arc_metadata or {}).get("depends_on_arc_codes") or []) for arc in arcs}


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


@dataclass
class ArcUserContext:
    user_id: int
    points: int
    coins: int
    tasks_completed: int
    claimed_quests: set[str] = field(default_factory=set)
    inventory: dict[str, int] = field(default_factory=dict)

    @property
    def level(self) -> int:
        return level_of(self.points)

    @property
    def elo(self) -> str:
        return elo_of(self.points)


def step_met(requirement: dict, ctx: ArcUserContext) -> bool:
    metric, target = requirement["metric"], requirement.get("target", 1)
    if metric == "LEVEL":
        return ctx.level >= target
    if metric == "TASKS_COMPLETED":
        return ctx.tasks_completed >= target
    if metric == "QUESTS_CLAIMED":
        if requirement.get("quest_code"):
            return requirement["quest_code"] in ctx.claimed_quests
        return len(ctx.claimed_quests) >= target
    if metric == "ITEM_OWNED":
        return ctx.inventory.get(requirement["item_key"], 0) >= target
    if metric == "COINS":
        return ctx.coins >= target
    return False


def describe_requirement(requirement: dict) -> str:
    metric, target = requirement["metric"], requirement.get("target", 1)
    if metric == "LEVEL":
        return f"Reach level {target}"
    if metric == "TASKS_COMPLETED":
        return f"Complete {target} task(s)"
    if metric == "QUESTS_CLAIMED":
        if requirement.get("quest_code"):
            return f"Claim quest {requirement['quest_code']}"
        return f"Claim {target} quest(s)"
    if metric == "ITEM_OWNED":
        return f"Own {target}x {requirement['item_key']}"
    if metric == "COINS":
        return f"Hold {target} coins"
    return metric


class StoryArcResolver:
    """Computes LOCKED / IN_PROGRESS / COMPLETED arcs for one user per call."""

    def __init__(self, db: AsyncSession, redis: object) -> None:
        self.db = db
        self.redis = redis

    async def _load_context(self, user_id: int) -> ArcUserContext:
        gam = await get_or_create_gamification(self.db, user_id)
        claimed = await self.db.execute(
            select(Quest.code)
            .join(QuestProgress, QuestProgress.quest_id == Quest.id)
            .where(QuestProgress.user_id == user_id, QuestProgress.status == "CLAIMED")
        )
        inventory = await self.db.execute(
            select(InventoryItem.item_key, InventoryItem.quantity).where(InventoryItem.user_id == user_id)
        )
        return ArcUserContext(
            user_id=user_id,
            points=gam.points,
            coins=gam.coins,
            tasks_completed=await count_awards(self.db, user_id, AwardSource.TASK_COMPLETED),
            claimed_quests=set(claimed.scalars().all()),
            inventory={key: qty for key, qty in inventory.all()},
        )

    async def resolve_arcs_for_user(self, user_id: int) -> list[dict]:
        """Resolve every active in-window arc, advancing steps the user has met."""
        await get_user(self.db, user_id)
        now = utcnow()

        arcs = list((await self.db.execute(select(StoryArc).order_by(StoryArc.chapter, StoryArc.id))).scalars().all())
        by_code = {arc.code: arc for arc in arcs}
        rows = await self.db.execute(select(StoryArcProgress).where(StoryArcProgress.user_id == user_id))
        progress = {row.story_arc_id: row for row in rows.scalars().all()}

        ctx = await self._load_context(user_id)
        memo: dict[str, str] = {}
        visiting: set[str] = set()

        async def resolve(code: str) -> str:
            if code in memo:
                return memo[code]
            if code not in by_code:
                logger.warning("Unknown story arc dependency %s", code)
                memo[code] = LOCKED
                return LOCKED
            if code in visiting:
                raise ConfigurationError(f"Cyclic story arc dependency at {code}", {"arc": code})
            visiting.add(code)
            try:
                memo[code] = await self._resolve_arc(by_code[code], progress, ctx, now, resolve)
            finally:
                visiting.discard(code)
            return memo[code]

        for arc in arcs:
            await resolve(arc.code)

        await commit_and_publish(self.db, self.redis)
        visible = [a for a in arcs if a.is_active and within_window(now, a.starts_at, a.ends_at)]
        return [self._view(arc, memo[arc.code], progress.get(arc.id), memo, ctx) for arc in visible]

    async def _resolve_arc(
        self,
        arc: StoryArc,
        progress: dict[int, StoryArcProgress],
        ctx: ArcUserContext,
        now: datetime,
        resolve: Callable[[str], Awaitable[str]],
    ) -> str:
        meta = arc.arc_metadata or {}
        row = progress.get(arc.id)
        if row is not None and row.status == COMPLETED:
            return COMPLETED
        if not arc.is_active or not within_window(now, arc.starts_at, arc.ends_at):
            return LOCKED
        if ctx.level < (meta.get("min_level") or 0) or not meets_min_elo(ctx.elo, meta.get("min_elo")):
            return LOCKED
        for dep in meta.get("depends_on_arc_codes") or []:
            if await resolve(dep) != COMPLETED:
                return LOCKED

        if row is None:
            row = await self._start_arc(ctx.user_id, arc)
            progress[arc.id] = row
        return await self._advance(arc, row, ctx)

    async def _start_arc(self, user_id: int, arc: StoryArc) -> StoryArcProgress:
        stmt = insert_for(self.db, StoryArcProgress).values(
            user_id=user_id,
            story_arc_id=arc.id,
            status=IN_PROGRESS,
            current_step=1,
            completed_steps=0,
            started_at=utcnow(),
        )
        await self.db.execute(stmt.on_conflict_do_nothing(index_elements=["user_id", "story_arc_id"]))
        result = await self.db.execute(
            select(StoryArcProgress).where(
                StoryArcProgress.user_id == user_id,
                StoryArcProgress.story_arc_id == arc.id,
            )
        )
        return result.scalar_one()

    async def _advance(self, arc: StoryArc, row: StoryArcProgress, ctx: ArcUserContext) -> str:
        meta = arc.arc_metadata or {}
        steps = meta.get("steps") or []
        total = meta.get("total_steps", len(steps))

        while row.completed_steps < min(total, len(steps)):
            step = steps[row.completed_steps]
            if not step_met(step["requirement"], ctx):
                break
            step_number = row.completed_steps + 1
            await self._pay_step(arc, step_number, step, ctx)
            row.completed_steps = step_number
            row.current_step = min(step_number + 1, total)

        if row.completed_steps >= total and row.status != COMPLETED:
            row.status = COMPLETED
            row.completed_at = utcnow()
            await emit_event(
                self.db, self.redis, ctx.user_id,
                subtype="story_arc_completed",
                title=f"Story arc complete: {arc.title}",
                payload={"arc_code": arc.code},
            )
        await self.db.flush()
        return row.status

    async def _pay_step(self, arc: StoryArc, step_number: int, step: dict, ctx: ArcUserContext) -> None:
        reward = step.get("reward") or {}
        result = await grant_award(
            self.db, self.redis, ctx.user_id,
            source_type=AwardSource.STORY_STEP_COMPLETED,
            source_id=arc.id * STEP_SOURCE_STRIDE + step_number,
            points=reward.get("xp", 0),
            coins=reward.get("coins", 0),
            trophies=reward.get("trophies", 0),
            description=f"{arc.code} step {step_number}",
        )
        if result["already_awarded"]:
            return
        ctx.points += result["points_awarded"]
        ctx.coins += result["coins_awarded"]
        if reward.get("item_key"):
            await add_inventory_item(
                self.db, ctx.user_id,
                item_key=reward["item_key"],
                item_name=reward["item_name"],
                rarity=reward["item_rarity"],
                quantity=reward["item_quantity"],
                source_type="STORY_ARC",
            )
            ctx.inventory[reward["item_key"]] = ctx.inventory.get(reward["item_key"], 0) + reward["item_quantity"]
        await emit_event(
            self.db, self.redis, ctx.user_id,
            subtype="story_step_completed",
            title=f"{arc.title}: {step.get('title', f'Step {step_number}')}",
            payload={"arc_code": arc.code, "step": step_number, "reward": reward},
        )

    @staticmethod
    def _unlock_requirement(arc: StoryArc, memo: dict[str, str], ctx: ArcUserContext) -> str | None:
        """Unmet gates only, e.g. "Complete arc ARC_ORIGINS; Level 8+"."""
        meta = arc.arc_metadata or {}
        parts = [f"Complete arc {dep}" for dep in meta.get("depends_on_arc_codes") or [] if memo.get(dep) != COMPLETED]
        if ctx.level < (meta.get("min_level") or 0):
            parts.append(f"Level {meta['min_level']}+")
        if not meets_min_elo(ctx.elo, meta.get("min_elo")):
            parts.append(f"Elo {meta['min_elo']}")
        return "; ".join(parts) or None

    def _view(
        self,
        arc: StoryArc,
        status: str,
        row: StoryArcProgress | None,
        memo: dict[str, str],
        ctx: ArcUserContext,
    ) -> dict:
        meta = arc.arc_metadata or {}
        steps = meta.get("steps") or []
        total = meta.get("total_steps", len(steps))
        completed_steps = row.completed_steps if row else 0

        unlock_requirement = None
        if status == LOCKED:
            unlock_requirement = self._unlock_requirement(arc, memo, ctx)
            next_objective = f"Unlock: {unlock_requirement}" if unlock_requirement else "Locked"
        elif status == COMPLETED:
            next_objective = None
        else:
            next_objective = describe_requirement(steps[completed_steps]["requirement"]) if completed_steps < len(steps) else None

        return {
            "arc_id": arc.id,
            "code": arc.code,
            "title": arc.title,
            "description": arc.description,
            "chapter": arc.chapter,
            "status": status,
            "current_step": row.current_step if row else 1,
            "completed_steps": total if status == COMPLETED else completed_steps,
            "total_steps": total,
            "min_level": meta.get("min_level", 0),
            "min_elo": meta.get("min_elo"),
            "depends_on_arc_codes": meta.get("depends_on_arc_codes", []),
            "starts_at": arc.starts_at,
            "ends_at": arc.ends_at,
            "next_objective": next_objective,
            "unlock_requirement": unlock_requirement,
        }


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


async def _all_arcs(db: AsyncSession) -> list[StoryArc]:
    return list((await db.execute(select(StoryArc))).scalars().all())


async def create_story_arc(
    db: AsyncSession,
    code: str,
    title: str,
    metadata: dict,
    description: str | None = None,
    chapter: int = 1,
    is_active: bool = True,
    starts_at: Any = None,
    ends_at: Any = None,
) -> StoryArc:
    """Create an arc after validating its metadata and the resulting graph."""
    code = code.strip().upper()
    meta = validate_arc_metadata(code, metadata)
    if starts_at and ends_at and as_utc(ends_at) <= as_utc(starts_at):
        raise ConfigurationError(f"Arc {code}: ends_at must be after starts_at")

    graph = _arc_graph(await _all_arcs(db))
    if code in graph:
        raise ConfigurationError(f"Story arc code already exists: {code}")
    graph[code] = meta["depends_on_arc_codes"]
    validate_arc_graph(graph)

    arc = StoryArc(
        code=code,
        title=title,
        description=description,
        chapter=chapter,
        is_active=is_active,
        starts_at=starts_at,
        ends_at=ends_at,
        arc_metadata=meta,
    )
    db.add(arc)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConfigurationError(f"Story arc code already exists: {code}") from exc
    await db.refresh(arc)
    return arc


async def update_story_arc(db: AsyncSession, arc_id: int, **changes: Any) -> StoryArc:
    arc = await db.get(StoryArc, arc_id)
    if arc is None:
        raise NotFoundError(f"Story arc {arc_id} not found", {"arc_id": arc_id})

    if changes.get("metadata") is not None:
        meta = validate_arc_metadata(arc.code, changes["metadata"])
        graph = _arc_graph(await _all_arcs(db))
        graph[arc.code] = meta["depends_on_arc_codes"]
        validate_arc_graph(graph)
        arc.arc_metadata = meta

    for key in ("title", "description", "chapter", "is_active", "starts_at", "ends_at"):
        if changes.get(key) is not None:
            setattr(arc, key, changes[key])
    if arc.starts_at and arc.ends_at and as_utc(arc.ends_at) <= as_utc(arc.starts_at):
        await db.rollback()
        raise ConfigurationError(f"Arc {arc.code}: ends_at must be after starts_at")

    await db.commit()
    await db.refresh(arc)
    return arc
