from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.rental_models import Asset, Equipment
from services.availability_service import ASSET_STATUSES
from services.errors import NotFoundError


def _parse_seq(serial_number: str | None) -> Optional[int]:
    value = (serial_number or "").strip()
    if not value.isdigit():
        return None
    return int(value)


def serial_sort_key(asset: Asset) -> tuple:
    # Numeric serials in numeric order first, then the rest alphabetically.
    seq = _parse_seq(asset.SerialNumber)
    if seq is not None:
        return (0, seq, "")
    return (1, 0, asset.SerialNumber or "")


def generate_next_serial(db: Session, equipment_id: int) -> str:
    existing = db.execute(
        select(Asset.SerialNumber).where(Asset.EquipmentID == equipment_id)
    ).scalars().all()
    max_seq = 0
    for serial in existing:
        seq = _parse_seq(serial)
        if seq and seq > max_seq:
            max_seq = seq
    return str(max_seq + 1)


def get_equipment_or_404(db: Session, equipment_id: int) -> Equipment:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFoundError(f"Equipment {equipment_id} not found")
    return equipment


def get_asset_or_404(db: Session, asset_id: int) -> Asset:
    asset = db.get(Asset, asset_id)
    if not asset:
        raise NotFoundError(f"Asset {asset_id} not found")
    return asset


def normalize_asset_status(raw: str | None) -> str:
    status = (raw or "available").strip().lower()
    if status not in ASSET_STATUSES:
        raise ValueError(f"Unknown asset status: {raw}")
    return status


def sync_total_quantity(db: Session, equipment: Equipment) -> None:
    count = db.execute(
        select(func.count(Asset.AssetID)).where(Asset.EquipmentID == equipment.EquipmentID)
    ).scalar()
    equipment.TotalQuantity = int(count or 0)
    equipment.UpdatedDate = datetime.now()


def create_asset(
    db: Session,
    equipment: Equipment,
    serial_number: str | None = None,
    management_code: str | None = None,
    status: str | None = None,
    note: str | None = None,
) -> Asset:
    serial = (serial_number or "").strip() or generate_next_serial(db, equipment.EquipmentID)
    asset = Asset(
        EquipmentID=equipment.EquipmentID,
        EquipmentName=equipment.EquipmentName,
        SerialNumber=serial,
        ManagementCode=(management_code or "").strip() or None,
        Status=normalize_asset_status(status),
        Note=(note or "").strip() or None,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(asset)
    db.flush()
    sync_total_quantity(db, equipment)
    return asset


def list_equipment(db: Session) -> list[Equipment]:
    equipment = db.execute(select(Equipment)).scalars().all()
    return sorted(
        equipment,
        key=lambda e: (e.SortOrder if e.SortOrder is not None else 9999, e.EquipmentName or ""),
    )


def list_assets(db: Session, equipment_id: int) -> list[Asset]:
    assets = db.execute(select(Asset).where(Asset.EquipmentID == equipment_id)).scalars().all()
    return sorted(assets, key=serial_sort_key)


def serialize_equipment(equipment: Equipment) -> dict:
    return {
        "equipmentID": equipment.EquipmentID,
        "equipmentName": equipment.EquipmentName,
        "categoryName": equipment.CategoryName,
        "manufacturer": equipment.Manufacturer,
        "description": equipment.Description,
        "totalQuantity": equipment.TotalQuantity,
        "sortOrder": equipment.SortOrder,
        "createdDate": equipment.CreatedDate,
        "updatedDate": equipment.UpdatedDate,
    }


def serialize_asset(asset: Asset) -> dict:
    return {
        "assetID": asset.AssetID,
        "equipmentID": asset.EquipmentID,
        "equipmentName": asset.EquipmentName,
        "serialNumber": asset.SerialNumber,
        "managementCode": asset.ManagementCode,
        "status": asset.Status,
        "note": asset.Note,
        "createdDate": asset.CreatedDate,
        "updatedDate": asset.UpdatedDate,
    }
