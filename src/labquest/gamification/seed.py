"""Default content: badges, quests, chests with loot tables and story arcs.

Seeding is idempotent. Rows are matched by their natural key (badge name,
quest/chest/arc code) and existing rows are left untouched so admin edits
survive restarts.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from labquest.db.models import Badge, Chest, ChestDrop, Quest, StoryArc
from labquest.db.upsert import insert_for
from labquest.gamification.badge_criteria import validate_criteria
from labquest.gamification.chest_service import WeightedTable, validate_chest, validate_drop
from labquest.gamification.quest_service import validate_quest
from labquest.gamification.story_arcs import _arc_graph, validate_arc_graph, validate_arc_metadata

logger = logging.getLogger(__name__)

BADGE_SEED_DATA: list[dict] = [
    {
        "name": "Primeiras Tasks",
        "description": "Concluiu as primeiras tarefas no sistema.",
        "icon": "sparkles",
        "color": "#22c55e",
        "category": "achievement",
        "criteria": {"tasks": 5},
    },
    {
        "name": "Semana Produtiva",
        "description": "Atingiu carga horária semanal planejada.",
        "icon": "timer",
        "color": "#3b82f6",
        "category": "milestone",
        "criteria": {"weekly_hours": 8},
    },
    {
        "name": "Maratonista",
        "description": "Registrou atividade em 7 dias seguidos.",
        "icon": "flame",
        "color": "#f97316",
        "category": "milestone",
        "criteria": {"special_condition": {"kind": "STREAK", "min_days": 7}},
    },
    {
        "name": "Multiprojetos",
        "description": "Contribuiu em três projetos diferentes.",
        "icon": "layers",
        "color": "#a855f7",
        "category": "achievement",
        "criteria": {"projects": 3, "tasks": 10},
    },
    {
        "name": "Pioneiro do Laboratório",
        "description": "Primeira pessoa a alcançar 1000 pontos.",
        "icon": "crown",
        "color": "#eab308",
        "category": "special",
        "criteria": {"special_condition": {"kind": "FIRST_TO_REACH", "metric": "points", "threshold": 1000}},
    },
    {
        "name": "Semana Perfeita",
        "description": "Cumpriu a carga horária semanal combinada.",
        "icon": "calendar-check",
        "color": "#14b8a6",
        "category": "milestone",
        "criteria": {"work_sessions": 3, "special_condition": {"kind": "PERFECT_WEEK"}},
    },
]

QUEST_SEED_DATA: list[dict] = [
    {
        "code": "DAILY_TASK_2",
        "title": "Ritmo diário",
        "description": "Conclua 2 tarefas.",
        "quest_type": "DAILY",
        "scope": "GLOBAL",
        "metric": "TASKS_COMPLETED",
        "target": 2,
        "reward_xp": 20,
        "reward_coins": 15,
    },
    {
        "code": "WEEKLY_HOURS_4",
        "title": "Bancada ativa",
        "description": "Registre 4 horas em sessões de trabalho.",
        "quest_type": "WEEKLY",
        "scope": "GLOBAL",
        "metric": "WORK_HOURS",
        "target": 4,
        "reward_xp": 60,
        "reward_coins": 40,
        "reward_trophies": 1,
    },
    {
        "code": "WEEKLY_SESSIONS_3",
        "title": "Colaboração cruzada",
        "description": "Conclua 3 sessões de trabalho em projetos.",
        "quest_type": "WEEKLY",
        "scope": "CROSS_PROJECT",
        "metric": "WORK_SESSIONS_COMPLETED",
        "target": 3,
        "reward_xp": 40,
        "reward_coins": 30,
    },
]

CHEST_SEED_DATA: list[dict] = [
    {
        "code": "iron-starter",
        "name": "Baú de Ferro",
        "description": "Baú básico para aventureiros iniciantes.",
        "rarity": "common",
        "price_coins": 120,
        "min_drops": 1,
        "max_drops": 2,
        "drops": [
            {"item_key": "iron-shield", "item_name": "Escudo de Ferro", "rarity": "common", "weight": 42, "qty_min": 1, "qty_max": 1},
            {"item_key": "stamina-potion", "item_name": "Poção de Fôlego", "rarity": "common", "weight": 35, "qty_min": 1, "qty_max": 2},
            {"item_key": "scribe-scroll", "item_name": "Pergaminho de Registro", "rarity": "uncommon", "weight": 18, "qty_min": 1, "qty_max": 1},
            {"item_key": "ember-core", "item_name": "Núcleo de Brasa", "rarity": "rare", "weight": 5, "qty_min": 1, "qty_max": 1},
        ],
    },
    {
        "code": "arcane-elite",
        "name": "Baú Arcano",
        "description": "Equipamento refinado para agentes de elite.",
        "rarity": "rare",
        "price_coins": 340,
        "min_drops": 2,
        "max_drops": 3,
        "drops": [
            {"item_key": "mana-sigil", "item_name": "Sigilo de Mana", "rarity": "uncommon", "weight": 35, "qty_min": 1, "qty_max": 2},
            {"item_key": "rune-blade", "item_name": "Lâmina Rúnica", "rarity": "rare", "weight": 32, "qty_min": 1, "qty_max": 1},
            {"item_key": "storm-cape", "item_name": "Manto da Tempestade", "rarity": "rare", "weight": 23, "qty_min": 1, "qty_max": 1},
            {"item_key": "oracle-lens", "item_name": "Lente do Oráculo", "rarity": "epic", "weight": 10, "qty_min": 1, "qty_max": 1},
        ],
    },
    {
        "code": "celestial-mythic",
        "name": "Baú Celestial",
        "description": "Relíquias lendárias para os mais dedicados.",
        "rarity": "epic",
        "price_coins": 800,
        "min_drops": 3,
        "max_drops": 4,
        "drops": [
            {"item_key": "solar-aegis", "item_name": "Égide Solar", "rarity": "epic", "weight": 38, "qty_min": 1, "qty_max": 1},
            {"item_key": "void-hammer", "item_name": "Martelo do Vazio", "rarity": "epic", "weight": 28, "qty_min": 1, "qty_max": 1},
            {"item_key": "astral-crown", "item_name": "Coroa Astral", "rarity": "legendary", "weight": 14, "qty_min": 1, "qty_max": 1},
            {"item_key": "phoenix-emblem", "item_name": "Emblema da Fênix", "rarity": "legendary", "weight": 12, "qty_min": 1, "qty_max": 1},
            {"item_key": "mythic-fragment", "item_name": "Fragmento Mítico", "rarity": "rare", "weight": 8, "qty_min": 1, "qty_max": 2},
        ],
    },
]

STORY_ARC_SEED_DATA: list[dict] = [
    {
        "code": "ARC_ORIGINS",
        "title": "Origens",
        "description": "Os primeiros passos no laboratório.",
        "chapter": 1,
        "metadata": {
            "steps": [
                {
                    "title": "Primeira entrega",
                    "requirement": {"metric": "TASKS_COMPLETED", "target": 1},
                    "reward": {"xp": 10, "coins": 20},
                },
                {
                    "title": "Aprendiz",
                    "requirement": {"metric": "LEVEL", "target": 1},
                    "reward": {"coins": 50, "item_key": "stamina-potion", "item_name": "Poção de Fôlego"},
                },
            ],
        },
    },
    {
        "code": "ARC_ASCENT",
        "title": "Ascensão",
        "description": "Consolide sua presença na equipe.",
        "chapter": 2,
        "metadata": {
            "min_level": 5,
            "depends_on_arc_codes": ["ARC_ORIGINS"],
            "steps": [
                {
                    "title": "Missão cumprida",
                    "requirement": {"metric": "QUESTS_CLAIMED", "target": 1},
                    "reward": {"xp": 30, "coins": 60},
                },
                {
                    "title": "Arsenal inicial",
                    "requirement": {"metric": "ITEM_OWNED", "item_key": "iron-shield"},
                    "reward": {"trophies": 1},
                },
            ],
        },
    },
    {
        "code": "ARC_CONVERGENCE",
        "title": "Convergência",
        "description": "Lidere entregas entre projetos.",
        "chapter": 3,
        "metadata": {
            "min_level": 10,
            "min_elo": "FERRO_III",
            "depends_on_arc_codes": ["ARC_ASCENT"],
            "steps": [
                {
                    "title": "Ritmo constante",
                    "requirement": {"metric": "TASKS_COMPLETED", "target": 25},
                    "reward": {"xp": 80, "coins": 120},
                },
                {
                    "title": "Tesouro arcano",
                    "requirement": {"metric": "ITEM_OWNED", "item_key": "rune-blade"},
                    "reward": {
                        "trophies": 2,
                        "item_key": "convergence-medal",
                        "item_name": "Medalha da Convergência",
                        "item_rarity": "epic",
                    },
                },
            ],
        },
    },
]


async def seed_badges(db: AsyncSession) -> int:
    """Insert default badges that do not exist yet. Returns rows inserted."""
    inserted = 0
    for badge in BADGE_SEED_DATA:
        stmt = insert_for(db, Badge).values(**{**badge, "criteria": validate_criteria(badge["criteria"])})
        stmt = stmt.on_conflict_do_nothing(index_elements=["name"])
        result = await db.execute(stmt)
        inserted += result.rowcount or 0
    return inserted


async def seed_quests(db: AsyncSession) -> int:
    inserted = 0
    for quest in QUEST_SEED_DATA:
        stmt = insert_for(db, Quest).values(**validate_quest(quest))
        stmt = stmt.on_conflict_do_nothing(index_elements=["code"])
        result = await db.execute(stmt)
        inserted += result.rowcount or 0
    return inserted


async def seed_chests(db: AsyncSession) -> int:
    """Insert default chests and any of their drops that are missing."""
    inserted = 0
    for chest in CHEST_SEED_DATA:
        fields = {k: v for k, v in chest.items() if k != "drops"}
        validate_chest(fields)
        drops = [validate_drop(d) for d in chest["drops"]]
        WeightedTable([ChestDrop(**d) for d in drops])

        stmt = insert_for(db, Chest).values(**fields).on_conflict_do_nothing(index_elements=["code"])
        result = await db.execute(stmt)
        inserted += result.rowcount or 0

        chest_id = (await db.execute(select(Chest.id).where(Chest.code == chest["code"]))).scalar_one()
        for drop in drops:
            drop_stmt = insert_for(db, ChestDrop).values(chest_id=chest_id, **drop)
            await db.execute(drop_stmt.on_conflict_do_nothing(index_elements=["chest_id", "item_key"]))
    return inserted


async def seed_story_arcs(db: AsyncSession) -> int:
    """Insert default arcs after checking the combined dependency graph."""
    existing = list((await db.execute(select(StoryArc))).scalars().all())
    graph = _arc_graph(existing)
    pending = []
    for arc in STORY_ARC_SEED_DATA:
        meta = validate_arc_metadata(arc["code"], arc["metadata"])
        if arc["code"] not in graph:
            graph[arc["code"]] = meta["depends_on_arc_codes"]
            pending.append({**{k: v for k, v in arc.items() if k != "metadata"}, StoryArc.arc_metadata: meta})
    validate_arc_graph(graph)

    inserted = 0
    for arc in pending:
        stmt = insert_for(db, StoryArc).values(arc).on_conflict_do_nothing(index_elements=["code"])
        result = await db.execute(stmt)
        inserted += result.rowcount or 0
    return inserted


async def seed_defaults(db: AsyncSession) -> dict[str, int]:
    """Seed every default catalog in one transaction."""
    counts = {
        "badges": await seed_badges(db),
        "quests": await seed_quests(db),
        "chests": await seed_chests(db),
        "story_arcs": await seed_story_arcs(db),
    }
    await db.commit()
    logger.info("Seeded defaults: %s", counts)
    return counts
