"""Chest loot engine: weighted drops, discounted pricing and atomic debit."""

from __future__ import annotations

import bisect
import itertools
import logging
import random
from collections.abc import Sequence
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from labquest.db.models import Chest, ChestDrop, InventoryItem, UserGamification
from labquest.db.upsert import insert_for
from labquest.gamification.award_service import get_or_create_gamification, get_user
from labquest.gamification.events import commit_and_publish, emit_event
from labquest.gamification.exceptions import (
    ConfigurationError,
    InsufficientFundsError,
    InvalidStateError,
    NotFoundError,
)
from labquest.gamification.progression import chest_discount_rate, discounted_unit_price
from labquest.gamification.timeutils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_OPEN_QUANTITY = 10


class WeightedTable:
    """Cumulative-weight sampler over active drops with positive weight.

    Built from the current drop rows on every open, so admin edits take
    effect immediately.
    """

    def __init__(self, drops: Sequence[ChestDrop]) -> None:
        self.items = [d for d in drops if d.is_active and (d.weight or 0) > 0]
        if not self.items:
            raise ConfigurationError("Chest has no active drops with positive weight")
        self.cumulative = list(itertools.accumulate(d.weight for d in self.items))
        self.total = self.cumulative[-1]

    def sample(self, rng: random.Random) -> ChestDrop:
        point = rng.randrange(self.total)
        return self.items[bisect.bisect_right(self.cumulative, point)]

    def chance(self, drop: ChestDrop) -> float:
        """Per-draw probability of a drop, as a percentage."""
        if drop not in self.items:
            return 0.0
        return round(drop.weight * 100 / self.total, 2)


def roll_chest(chest: Chest, table: WeightedTable, rng: random.Random) -> list[dict]:
    """Resolve one opening: uniform drop count, weighted items with replacement."""
    count = rng.randint(chest.min_drops, chest.max_drops)
    drops = []
    for _ in range(count):
        drop = table.sample(rng)
        drops.append({
            "item_key": drop.item_key,
            "item_name": drop.item_name,
            "rarity": drop.rarity,
            "quantity": rng.randint(drop.qty_min, drop.qty_max),
        })
    return drops


async def get_chest(db: AsyncSession, chest_id: int) -> Chest:
    chest = await db.get(Chest, chest_id)
    if chest is None:
        raise NotFoundError(f"Chest {chest_id} not found", {"chest_id": chest_id})
    return chest


async def list_chest_drops(db: AsyncSession, chest_id: int) -> list[ChestDrop]:
    result = await db.execute(
        select(ChestDrop).where(ChestDrop.chest_id == chest_id).order_by(ChestDrop.id)
    )
    return list(result.scalars().all())


async def add_inventory_item(
    db: AsyncSession,
    user_id: int,
    item_key: str,
    item_name: str,
    rarity: str,
    quantity: int,
    source_type: str,
) -> None:
    """Create the inventory row or add to its quantity."""
    now = utcnow()
    stmt = insert_for(db, InventoryItem).values(
        user_id=user_id,
        item_key=item_key,
        item_name=item_name,
        rarity=rarity,
        quantity=quantity,
        source_type=source_type,
        acquired_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "item_key"],
        set_={
            "quantity": InventoryItem.quantity + stmt.excluded.quantity,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await db.execute(stmt)


async def open_chest(
    db: AsyncSession,
    redis: object,
    user_id: int,
    chest_id: int,
    quantity: int = 1,
    rng: random.Random | None = None,
    max_quantity: int = DEFAULT_MAX_OPEN_QUANTITY,
) -> dict:
    """Open a chest `quantity` times in one transaction.

    Coins are debited with a conditional UPDATE (coins >= cost), so two
    concurrent opens can never drive the balance negative. Drops are only
    written after a successful debit and both commit together.
    """
    await get_user(db, user_id)
    chest = await get_chest(db, chest_id)
    if not chest.is_active:
        raise InvalidStateError(f"Chest {chest_id} is not active", {"chest_id": chest_id})
    if quantity < 1 or quantity > max_quantity:
        raise InvalidStateError(
            f"Quantity must be between 1 and {max_quantity}",
            {"quantity": quantity, "max_quantity": max_quantity},
        )

    table = WeightedTable(await list_chest_drops(db, chest_id))

    gam = await get_or_create_gamification(db, user_id)
    discount_rate = chest_discount_rate(gam.archetype, gam.points)
    unit_price = discounted_unit_price(chest.price_coins, discount_rate)
    cost = unit_price * quantity
    if gam.coins < cost:
        raise InsufficientFundsError(required=cost, available=gam.coins)

    now = utcnow()
    debit = await db.execute(
        update(UserGamification)
        .where(UserGamification.user_id == user_id, UserGamification.coins >= cost)
        .values(coins=UserGamification.coins - cost, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if debit.rowcount != 1:
        await db.rollback()
        available = (
            await db.execute(select(UserGamification.coins).where(UserGamification.user_id == user_id))
        ).scalar_one_or_none() or 0
        raise InsufficientFundsError(required=cost, available=available)

    rng = rng or random.SystemRandom()
    openings = [roll_chest(chest, table, rng) for _ in range(quantity)]

    totals: dict[str, dict[str, Any]] = {}
    for drops in openings:
        for drop in drops:
            entry = totals.setdefault(drop["item_key"], {**drop, "quantity": 0})
            entry["quantity"] += drop["quantity"]
    for item in totals.values():
        await add_inventory_item(
            db, user_id,
            item_key=item["item_key"],
            item_name=item["item_name"],
            rarity=item["rarity"],
            quantity=item["quantity"],
            source_type="CHEST",
        )

    await db.refresh(gam)
    await emit_event(
        db, redis, user_id,
        subtype="chest_opened",
        title=f"Opened {quantity}x {chest.name}",
        payload={"chest_id": chest.id, "quantity": quantity, "spent_coins": cost, "items": list(totals)},
    )
    await commit_and_publish(db, redis)
    logger.info("User %s opened chest %s x%d for %d coins", user_id, chest.code, quantity, cost)

    return {
        "chest_id": chest.id,
        "chest_name": chest.name,
        "quantity": quantity,
        "spent_coins": cost,
        "base_unit_price": chest.price_coins,
        "discounted_unit_price": unit_price,
        "discount_rate": discount_rate,
        "coins": gam.coins,
        "drops": [drop for drops in openings for drop in drops],
        "items": sorted(totals.values(), key=lambda i: i["item_key"]),
    }


async def list_chest_catalog(db: AsyncSession, user_id: int | None = None) -> list[dict]:
    """Active chests with drop chances, priced for the user when given."""
    discount_rate = 0.0
    if user_id is not None:
        await get_user(db, user_id)
        gam = await get_or_create_gamification(db, user_id)
        discount_rate = chest_discount_rate(gam.archetype, gam.points)

    result = await db.execute(select(Chest).where(Chest.is_active.is_(True)).order_by(Chest.price_coins))
    catalog = []
    for chest in result.scalars().all():
        drops = await list_chest_drops(db, chest.id)
        try:
            table: WeightedTable | None = WeightedTable(drops)
        except ConfigurationError:
            logger.warning("Chest %s has no openable drops", chest.code)
            table = None
        catalog.append({
            "chest_id": chest.id,
            "code": chest.code,
            "name": chest.name,
            "description": chest.description,
            "rarity": chest.rarity,
            "price_coins": chest.price_coins,
            "discounted_unit_price": discounted_unit_price(chest.price_coins, discount_rate),
            "discount_rate": discount_rate,
            "min_drops": chest.min_drops,
            "max_drops": chest.max_drops,
            "openable": table is not None,
            "drops": [
                {
                    "item_key": d.item_key,
                    "item_name": d.item_name,
                    "rarity": d.rarity,
                    "qty_min": d.qty_min,
                    "qty_max": d.qty_max,
                    "chance": table.chance(d) if table else 0.0,
                }
                for d in drops
                if d.is_active
            ],
        })
    return catalog


async def list_inventory(db: AsyncSession, user_id: int) -> list[InventoryItem]:
    await get_user(db, user_id)
    result = await db.execute(
        select(InventoryItem)
        .where(InventoryItem.user_id == user_id, InventoryItem.quantity > 0)
        .order_by(InventoryItem.rarity, InventoryItem.item_key)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


def validate_drop(data: dict[str, Any]) -> dict[str, Any]:
    if not data.get("item_key") or not data.get("item_name"):
        raise ConfigurationError("Drops require item_key and item_name")
    weight = data.get("weight")
    if isinstance(weight, bool) or not isinstance(weight, int) or weight <= 0:
        raise ConfigurationError(f"Drop {data['item_key']} weight must be a positive integer")
    qty_min, qty_max = data.get("qty_min", 1), data.get("qty_max", 1)
    if qty_min < 1 or qty_max < qty_min:
        raise ConfigurationError(f"Drop {data['item_key']} needs 1 <= qty_min <= qty_max")
    return {
        "item_key": data["item_key"],
        "item_name": data["item_name"],
        "rarity": data.get("rarity", "common"),
        "weight": weight,
        "qty_min": qty_min,
        "qty_max": qty_max,
        "is_active": data.get("is_active", True),
    }


def validate_chest(data: dict[str, Any]) -> None:
    if data.get("price_coins", 0) <= 0:
        raise ConfigurationError("Chest price must be positive")
    min_drops, max_drops = data.get("min_drops", 1), data.get("max_drops", 1)
    if min_drops < 1 or max_drops < min_drops:
        raise ConfigurationError("Chest needs 1 <= min_drops <= max_drops")


async def _check_openable(db: AsyncSession, chest: Chest) -> None:
    if chest.is_active:
        WeightedTable(await list_chest_drops(db, chest.id))


async def create_chest(
    db: AsyncSession,
    code: str,
    name: str,
    price_coins: int,
    rarity: str = "common",
    min_drops: int = 1,
    max_drops: int = 1,
    description: str | None = None,
    is_active: bool = True,
    drops: list[dict] | None = None,
) -> Chest:
    """Create a chest and its loot table. Active chests must be openable."""
    validate_chest({"price_coins": price_coins, "min_drops": min_drops, "max_drops": max_drops})
    validated = [validate_drop(d) for d in drops or []]
    if is_active:
        WeightedTable([ChestDrop(**d) for d in validated])

    chest = Chest(
        code=code.strip().lower(),
        name=name,
        description=description,
        rarity=rarity,
        price_coins=price_coins,
        min_drops=min_drops,
        max_drops=max_drops,
        is_active=is_active,
    )
    db.add(chest)
    try:
        await db.flush()
        for drop in validated:
            db.add(ChestDrop(chest_id=chest.id, **drop))
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConfigurationError(f"Duplicate chest code or drop item: {code}") from exc
    await db.refresh(chest)
    return chest


async def update_chest(db: AsyncSession, chest_id: int, **changes: Any) -> Chest:
    chest = await get_chest(db, chest_id)
    merged = {
        key: changes[key] if changes.get(key) is not None else getattr(chest, key)
        for key in ("price_coins", "min_drops", "max_drops")
    }
    validate_chest(merged)
    for key in ("name", "description", "rarity", "price_coins", "min_drops", "max_drops", "is_active"):
        if changes.get(key) is not None:
            setattr(chest, key, changes[key])
    await db.flush()
    try:
        await _check_openable(db, chest)
    except ConfigurationError:
        await db.rollback()
        raise
    await db.commit()
    await db.refresh(chest)
    return chest


async def add_chest_drop(db: AsyncSession, chest_id: int, **fields: Any) -> ChestDrop:
    await get_chest(db, chest_id)
    drop = ChestDrop(chest_id=chest_id, **validate_drop(fields))
    db.add(drop)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConfigurationError(f"Chest {chest_id} already has item {fields.get('item_key')}") from exc
    await db.refresh(drop)
    return drop


async def update_chest_drop(db: AsyncSession, drop_id: int, **changes: Any) -> ChestDrop:
    """Edit a drop. Leaving an active chest without openable drops is rejected."""
    drop = await db.get(ChestDrop, drop_id)
    if drop is None:
        raise NotFoundError(f"Chest drop {drop_id} not found", {"drop_id": drop_id})
    merged = {
        key: getattr(drop, key)
        for key in ("item_key", "item_name", "rarity", "weight", "qty_min", "qty_max", "is_active")
    }
    merged.update({k: v for k, v in changes.items() if v is not None and k in merged})
    for key, value in validate_drop(merged).items():
        setattr(drop, key, value)
    await db.flush()

    chest = await get_chest(db, drop.chest_id)
    try:
        await _check_openable(db, chest)
    except ConfigurationError:
        await db.rollback()
        raise
    await db.commit()
    await db.refresh(drop)
    return drop
