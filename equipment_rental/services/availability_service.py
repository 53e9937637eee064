from __future__ import annotations

from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import Asset

BROKEN_STATUSES = frozenset({"maintenance", "broken", "lost", "repair", "retired"})
ASSET_STATUSES = BROKEN_STATUSES | {"available", "rented"}


def is_broken(asset: Asset) -> bool:
    return (asset.Status or "").strip().lower() in BROKEN_STATUSES


def partition_assets(assets: Iterable[Asset], occupied: set[int]) -> tuple[list[Asset], list[Asset], list[Asset]]:
    broken: list[Asset] = []
    claimed: list[Asset] = []
    available: list[Asset] = []
    for asset in assets:
        if is_broken(asset):
            broken.append(asset)
        elif asset.AssetID in occupied:
            claimed.append(asset)
        else:
            available.append(asset)
    return broken, claimed, available


def summarize_assets(assets: Iterable[Asset], occupied: set[int]) -> dict:
    broken, claimed, available = partition_assets(assets, occupied)
    total = len(broken) + len(claimed) + len(available)
    return {
        "total": total,
        "broken": len(broken),
        "rented": len(claimed),
        "available": total - len(broken) - len(claimed),
    }


def load_equipment_assets(db: Session, equipment_id: int) -> list[Asset]:
    return db.execute(
        select(Asset)
        .where(Asset.EquipmentID == equipment_id)
        .order_by(Asset.AssetID)
    ).scalars().all()


def resolve_availability(db: Session, equipment_id: int, occupied: set[int]) -> dict:
    return summarize_assets(load_equipment_assets(db, equipment_id), occupied)
