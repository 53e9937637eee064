from __future__ import annotations

import logging
import random
from typing import Iterable, Sequence

from sqlalchemy.orm import Session

from models.rental_models import Asset, Equipment
from services.availability_service import load_equipment_assets, partition_assets
from services.errors import InsufficientStockError

ALLOCATION_LOGGER = logging.getLogger("equipment_rental.allocation")


def shuffle_ids(asset_ids: Sequence[int], rng: random.Random | None = None) -> list[int]:
    shuffled = sorted(asset_ids)
    (rng or random.Random()).shuffle(shuffled)
    return shuffled


def pick_assets(
    assets: Iterable[Asset],
    occupied: set[int],
    quantity: int,
    equipment_name: str,
    rng: random.Random | None = None,
) -> list[int]:
    _, _, available = partition_assets(assets, occupied)
    if quantity <= 0:
        return []
    if len(available) < quantity:
        raise InsufficientStockError(equipment_name, quantity, len(available))
    return shuffle_ids([asset.AssetID for asset in available], rng)[:quantity]


def allocate_assets(
    db: Session,
    equipment: Equipment,
    occupied: set[int],
    quantity: int,
    rng: random.Random | None = None,
) -> list[int]:
    assets = load_equipment_assets(db, equipment.EquipmentID)
    try:
        picked = pick_assets(assets, occupied, quantity, equipment.EquipmentName, rng)
    except InsufficientStockError as exc:
        ALLOCATION_LOGGER.info(
            "Allocation short for equipment %s: requested=%s available=%s",
            equipment.EquipmentID,
            exc.requested,
            exc.available,
        )
        raise
    ALLOCATION_LOGGER.debug("Allocated assets %s for equipment %s", picked, equipment.EquipmentID)
    return picked
