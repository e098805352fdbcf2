"""Gamification API endpoints: progression, badges, quests, chests and story arcs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from labquest.dependencies import get_db, get_redis_dep
from labquest.gamification import badge_service, chest_service, quest_service, story_arcs
from labquest.gamification.engine import GamificationEngine
from labquest.gamification.schemas import (
    AwardResponse,
    BadgeAwardRequest,
    BadgeBatchResponse,
    BadgeCreate,
    BadgeEvaluationResponse,
    BadgeResponse,
    BadgeUpdate,
    ChestCatalogEntry,
    ChestCreate,
    ChestDropCreate,
    ChestDropResponse,
    ChestDropUpdate,
    ChestOpenRequest,
    ChestOpenResponse,
    ChestResponse,
    ChestUpdate,
    InventoryItemResponse,
    ProfileUpdate,
    ProgressionResponse,
    QuestClaimResponse,
    QuestCreate,
    QuestResponse,
    QuestUpdate,
    QuestView,
    StoryArcCreate,
    StoryArcResponse,
    StoryArcUpdate,
    StoryArcView,
    TaskCompletedEvent,
    UserBadgeResponse,
    WorkSessionCompletedEvent,
)

router = APIRouter(prefix="/api/v1", tags=["Gamification"])


async def get_gamification_engine(
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
) -> GamificationEngine:
    return GamificationEngine(db, redis)


# ── Collaborator events ──


@router.post("/events/task-completed", response_model=AwardResponse)
async def task_completed(
    body: TaskCompletedEvent,
    engine: GamificationEngine = Depends(get_gamification_engine),
):
    """Reward a completed task. Re-submitting the same task is a no-op."""
    return await engine.award_from_task_completion(
        user_id=body.user_id,
        task_id=body.task_id,
        task_points=body.task_points,
        due_date=body.due_date,
        completed_at=body.completed_at,
        project_id=body.project_id,
    )


@router.post("/events/work-session-completed", response_model=AwardResponse)
async def work_session_completed(
    body: WorkSessionCompletedEvent,
    engine: GamificationEngine = Depends(get_gamification_engine),
):
    return await engine.award_from_work_session(
        user_id=body.user_id,
        work_session_id=body.work_session_id,
        duration_seconds=body.duration_seconds,
        completed_task_ids=body.completed_task_ids,
        project_id=body.project_id,
        ended_at=body.ended_at,
    )


# ── Progression ──


@router.get("/users/{user_id}/progression", response_model=ProgressionResponse)
async def user_progression(user_id: int, engine: GamificationEngine = Depends(get_gamification_engine)):
    """Level, elo tier and balances for a user."""
    return await engine.get_user_progression(user_id)


@router.patch("/users/{user_id}/profile", response_model=ProgressionResponse)
async def update_profile(
    user_id: int,
    body: ProfileUpdate,
    engine: GamificationEngine = Depends(get_gamification_engine),
):
    """Set display name, archetype or title. Blank values clear the field."""
    return await engine.update_user_profile(user_id, **body.model_dump(exclude_unset=True))


# ── Badges ──


@router.get("/badges", response_model=list[BadgeResponse])
async def list_badges(
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    return await badge_service.list_badges(db, include_inactive=include_inactive)


@router.get("/badges/{badge_id}", response_model=BadgeResponse)
async def get_badge(badge_id: int, db: AsyncSession = Depends(get_db)):
    return await badge_service.get_badge(db, badge_id)


@router.post("/badges", response_model=BadgeResponse, status_code=201)
async def create_badge(body: BadgeCreate, db: AsyncSession = Depends(get_db)):
    return await badge_service.create_badge(db, **body.model_dump())


@router.patch("/badges/{badge_id}", response_model=BadgeResponse)
async def update_badge(badge_id: int, body: BadgeUpdate, db: AsyncSession = Depends(get_db)):
    return await badge_service.update_badge(db, badge_id, **body.model_dump(exclude_unset=True))


@router.delete("/badges/{badge_id}", response_model=BadgeResponse)
async def delete_badge(badge_id: int, db: AsyncSession = Depends(get_db)):
    """Deactivate a badge. Users keep badges they already earned."""
    return await badge_service.delete_badge(db, badge_id)


@router.post("/badges/evaluate-all", response_model=BadgeBatchResponse)
async def evaluate_all_badges(engine: GamificationEngine = Depends(get_gamification_engine)):
    awarded = await engine.evaluate_all_users()
    return BadgeBatchResponse(users_awarded=len(awarded), awarded=awarded)


@router.post("/badges/{badge_id}/award", response_model=UserBadgeResponse, status_code=201)
async def award_badge(
    badge_id: int,
    body: BadgeAwardRequest,
    engine: GamificationEngine = Depends(get_gamification_engine),
):
    """Manually grant a badge. Returns 409 if the user already holds it."""
    return await engine.award_badge(badge_id, body.user_id, body.awarded_by)


@router.get("/users/{user_id}/badges", response_model=list[UserBadgeResponse])
async def user_badges(user_id: int, db: AsyncSession = Depends(get_db)):
    return await badge_service.list_user_badges(db, user_id)


@router.post("/users/{user_id}/badges/evaluate", response_model=BadgeEvaluationResponse)
async def evaluate_user_badges(user_id: int, engine: GamificationEngine = Depends(get_gamification_engine)):
    granted = await engine.evaluate_user_badges(user_id)
    return BadgeEvaluationResponse(user_id=user_id, granted=[b.name for b in granted])


# ── Quests ──


@router.get("/users/{user_id}/quests", response_model=list[QuestView])
async def user_quests(user_id: int, engine: GamificationEngine = Depends(get_gamification_engine)):
    return await engine.list_quests(user_id)


@router.post("/users/{user_id}/quests/{quest_id}/claim", response_model=QuestClaimResponse)
async def claim_quest(
    user_id: int,
    quest_id: int,
    engine: GamificationEngine = Depends(get_gamification_engine),
):
    """Claim a completed quest's reward."""
    return await engine.claim_quest(user_id, quest_id)


@router.post("/quests", response_model=QuestResponse, status_code=201)
async def create_quest(body: QuestCreate, db: AsyncSession = Depends(get_db)):
    return await quest_service.create_quest(db, **body.model_dump())


@router.patch("/quests/{quest_id}", response_model=QuestResponse)
async def update_quest(quest_id: int, body: QuestUpdate, db: AsyncSession = Depends(get_db)):
    return await quest_service.update_quest(db, quest_id, **body.model_dump(exclude_unset=True))


# ── Chests & inventory ──


@router.get("/chests", response_model=list[ChestCatalogEntry])
async def list_chests(
    user_id: int | None = Query(None),
    engine: GamificationEngine = Depends(get_gamification_engine),
):
    """Chest catalog with drop chances. Pass user_id for discounted prices."""
    return await engine.list_chests(user_id)


@router.post("/users/{user_id}/chests/{chest_id}/open", response_model=ChestOpenResponse)
async def open_chest(
    user_id: int,
    chest_id: int,
    body: ChestOpenRequest | None = None,
    engine: GamificationEngine = Depends(get_gamification_engine),
):
    quantity = body.quantity if body else 1
    return await engine.open_chest(user_id, chest_id, quantity)


@router.post("/chests", response_model=ChestResponse, status_code=201)
async def create_chest(body: ChestCreate, db: AsyncSession = Depends(get_db)):
    data = body.model_dump()
    return await chest_service.create_chest(db, **data)


@router.patch("/chests/{chest_id}", response_model=ChestResponse)
async def update_chest(chest_id: int, body: ChestUpdate, db: AsyncSession = Depends(get_db)):
    return await chest_service.update_chest(db, chest_id, **body.model_dump(exclude_unset=True))


@router.post("/chests/{chest_id}/drops", response_model=ChestDropResponse, status_code=201)
async def add_chest_drop(chest_id: int, body: ChestDropCreate, db: AsyncSession = Depends(get_db)):
    return await chest_service.add_chest_drop(db, chest_id, **body.model_dump())


@router.patch("/chest-drops/{drop_id}", response_model=ChestDropResponse)
async def update_chest_drop(drop_id: int, body: ChestDropUpdate, db: AsyncSession = Depends(get_db)):
    return await chest_service.update_chest_drop(db, drop_id, **body.model_dump(exclude_unset=True))


@router.get("/users/{user_id}/inventory", response_model=list[InventoryItemResponse])
async def user_inventory(user_id: int, engine: GamificationEngine = Depends(get_gamification_engine)):
    return await engine.list_inventory(user_id)


# ── Story arcs ──


@router.get("/users/{user_id}/story-arcs", response_model=list[StoryArcView])
async def user_story_arcs(user_id: int, engine: GamificationEngine = Depends(get_gamification_engine)):
    """Resolve and return every visible arc for the user, advancing any met steps."""
    return await engine.resolve_arcs_for_user(user_id)


@router.post("/story-arcs", response_model=StoryArcResponse, status_code=201, response_model_by_alias=True)
async def create_story_arc(body: StoryArcCreate, db: AsyncSession = Depends(get_db)):
    return await story_arcs.create_story_arc(db, **body.model_dump())


@router.patch("/story-arcs/{arc_id}", response_model=StoryArcResponse, response_model_by_alias=True)
async def update_story_arc(arc_id: int, body: StoryArcUpdate, db: AsyncSession = Depends(get_db)):
    return await story_arcs.update_story_arc(db, arc_id, **body.model_dump(exclude_unset=True))
