from __future__ import annotations

from typing import Iterable


def assigned_asset_ids(item) -> list[int]:
    return [link.AssetID for link in (item.AssignedAssets or [])]


def occupied_assets(reservations: Iterable, equipment_id: int | None = None) -> set[int]:
    """Union the bound asset ids of every line item of ``reservations``.

    With ``equipment_id`` only line items of that equipment type count.
    """
    occupied: set[int] = set()
    for reservation in reservations:
        for item in reservation.ReservationItems:
            if equipment_id is not None and item.EquipmentID != equipment_id:
                continue
            occupied.update(assigned_asset_ids(item))
    return occupied
