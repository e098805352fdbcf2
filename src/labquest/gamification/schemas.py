"""Pydantic request/response models for gamification endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# --- Progression ---


class ProgressionResponse(BaseModel):
    user_id: int
    points: int
    xp: int
    level: int
    elo: str
    coins: int
    trophies: int
    archetype: str | None = None
    title: str | None = None
    display_name: str | None = None
    next_level_xp: int
    progress_to_next_level: int


class ProfileUpdate(BaseModel):
    display_name: str | None = Field(None, max_length=256)
    archetype: str | None = Field(None, max_length=256)
    title: str | None = Field(None, max_length=256)


# --- Collaborator events ---


class TaskCompletedEvent(BaseModel):
    user_id: int
    task_id: int
    task_points: int | None = None
    due_date: datetime | date | None = None
    completed_at: datetime | None = None
    project_id: int | None = None


class WorkSessionCompletedEvent(BaseModel):
    user_id: int
    work_session_id: int
    duration_seconds: int = Field(ge=0)
    completed_task_ids: list[int] = []
    project_id: int | None = None
    ended_at: datetime | None = None


class AwardResponse(BaseModel):
    already_awarded: bool
    source_type: str
    source_id: int
    points_awarded: int
    xp_awarded: int
    coins_awarded: int
    trophies_awarded: int
    leveled_up: bool
    scoring: dict[str, Any] = {}
    badges_awarded: list[str] = []
    progression: ProgressionResponse


# --- Badges ---


class BadgeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    category: str
    icon: str | None = None
    color: str | None = None
    criteria: dict[str, Any] = {}
    is_active: bool


class BadgeCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    category: str
    description: str = ""
    icon: str | None = None
    color: str | None = None
    criteria: dict[str, Any] = {}
    is_active: bool = True
    created_by: int | None = None


class BadgeUpdate(BaseModel):
    name: str | None = None
    category: str | None = None
    description: str | None = None
    icon: str | None = None
    color: str | None = None
    criteria: dict[str, Any] | None = None
    is_active: bool | None = None


class BadgeAwardRequest(BaseModel):
    user_id: int
    awarded_by: int | None = None


class UserBadgeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    badge_id: int
    user_id: int
    earned_at: datetime
    earned_by: int | None = None
    badge: BadgeResponse


class BadgeEvaluationResponse(BaseModel):
    user_id: int
    granted: list[str]


class BadgeBatchResponse(BaseModel):
    users_awarded: int
    awarded: dict[int, list[str]]


# --- Quests ---


class QuestReward(BaseModel):
    xp: int = 0
    coins: int = 0
    trophies: int = 0


class QuestView(BaseModel):
    quest_id: int
    code: str
    title: str
    description: str | None = None
    quest_type: str
    scope: str
    project_id: int | None = None
    metric: str
    target: float
    progress_value: float
    percent: int
    status: str
    locked: bool
    min_level: int
    min_elo: str | None = None
    reward: QuestReward
    starts_at: datetime | None = None
    ends_at: datetime | None = None


class QuestClaimResponse(BaseModel):
    quest_id: int
    code: str
    status: str
    reward: QuestReward
    progression: ProgressionResponse


class QuestCreate(BaseModel):
    code: str
    title: str
    description: str | None = None
    quest_type: str
    scope: str
    project_id: int | None = None
    min_level: int = 0
    min_elo: str | None = None
    metric: str
    target: float
    reward_xp: int = 0
    reward_coins: int = 0
    reward_trophies: int = 0
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    is_active: bool = True


class QuestUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    quest_type: str | None = None
    scope: str | None = None
    project_id: int | None = None
    min_level: int | None = None
    min_elo: str | None = None
    metric: str | None = None
    target: float | None = None
    reward_xp: int | None = None
    reward_coins: int | None = None
    reward_trophies: int | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    is_active: bool | None = None


class QuestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    title: str
    quest_type: str
    scope: str
    project_id: int | None = None
    min_level: int
    min_elo: str | None = None
    metric: str
    target: float
    reward_xp: int
    reward_coins: int
    reward_trophies: int
    is_active: bool


# --- Chests ---


class ChestDropView(BaseModel):
    item_key: str
    item_name: str
    rarity: str
    qty_min: int
    qty_max: int
    chance: float


class ChestCatalogEntry(BaseModel):
    chest_id: int
    code: str
    name: str
    description: str | None = None
    rarity: str
    price_coins: int
    discounted_unit_price: int
    discount_rate: float
    min_drops: int
    max_drops: int
    openable: bool
    drops: list[ChestDropView]


class ChestOpenRequest(BaseModel):
    quantity: int = 1


class DropResult(BaseModel):
    item_key: str
    item_name: str
    rarity: str
    quantity: int


class ChestOpenResponse(BaseModel):
    chest_id: int
    chest_name: str
    quantity: int
    spent_coins: int
    base_unit_price: int
    discounted_unit_price: int
    discount_rate: float
    coins: int
    drops: list[DropResult]
    items: list[DropResult]


class ChestDropCreate(BaseModel):
    item_key: str
    item_name: str
    rarity: str = "common"
    weight: int
    qty_min: int = 1
    qty_max: int = 1
    is_active: bool = True


class ChestDropUpdate(BaseModel):
    item_name: str | None = None
    rarity: str | None = None
    weight: int | None = None
    qty_min: int | None = None
    qty_max: int | None = None
    is_active: bool | None = None


class ChestCreate(BaseModel):
    code: str
    name: str
    price_coins: int
    rarity: str = "common"
    min_drops: int = 1
    max_drops: int = 1
    description: str | None = None
    is_active: bool = True
    drops: list[ChestDropCreate] = []


class ChestUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    rarity: str | None = None
    price_coins: int | None = None
    min_drops: int | None = None
    max_drops: int | None = None
    is_active: bool | None = None


class ChestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    name: str
    rarity: str
    price_coins: int
    min_drops: int
    max_drops: int
    is_active: bool


class ChestDropResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    chest_id: int
    item_key: str
    item_name: str
    rarity: str
    weight: int
    qty_min: int
    qty_max: int
    is_active: bool


class InventoryItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_key: str
    item_name: str
    rarity: str
    quantity: int
    source_type: str
    acquired_at: datetime


# --- Story arcs ---


class StoryArcView(BaseModel):
    arc_id: int
    code: str
    title: str
    description: str | None = None
    chapter: int
    status: str
    current_step: int
    completed_steps: int
    total_steps: int
    min_level: int
    min_elo: str | None = None
    depends_on_arc_codes: list[str] = []
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    next_objective: str | None = None
    unlock_requirement: str | None = None


class StoryArcCreate(BaseModel):
    code: str
    title: str
    description: str | None = None
    chapter: int = 1
    is_active: bool = True
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    metadata: dict[str, Any]


class StoryArcUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    chapter: int | None = None
    is_active: bool | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class StoryArcResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    title: str
    chapter: int
    is_active: bool
    arc_metadata: dict[str, Any] = Field(serialization_alias="metadata")
