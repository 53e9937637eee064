"""Append-only asset history rows (assignment, unassignment, return)."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import Asset, AssetHistory, Reservation


def record_asset_event(
    db: Session,
    asset: Asset,
    reservation: Reservation,
    action: str,
    condition: str | None = None,
    notes: str | None = None,
) -> AssetHistory:
    entry = AssetHistory(
        AssetID=asset.AssetID,
        ReservationID=reservation.ReservationID,
        UserID=reservation.UserID,
        UserName=reservation.LeaderName,
        EquipmentName=asset.EquipmentName,
        SerialNumber=asset.SerialNumber,
        Action=action,
        ReturnCondition=condition,
        ReturnNotes=notes,
        CreatedAt=datetime.now(),
    )
    db.add(entry)
    return entry


def serialize_history(entry: AssetHistory, reservation_number: str | None = None) -> dict:
    return {
        "historyID": entry.HistoryID,
        "assetID": entry.AssetID,
        "reservationID": entry.ReservationID,
        "reservationNumber": reservation_number,
        "userID": entry.UserID,
        "userName": entry.UserName or "Unknown",
        "equipmentName": entry.EquipmentName or "Unknown",
        "serialNumber": entry.SerialNumber,
        "action": entry.Action,
        "returnCondition": entry.ReturnCondition,
        "returnNotes": entry.ReturnNotes,
        "createdAt": entry.CreatedAt,
    }


def list_asset_history(db: Session, asset_id: int) -> list[dict]:
    rows = db.execute(
        select(AssetHistory, Reservation.ReservationNumber)
        .outerjoin(Reservation, Reservation.ReservationID == AssetHistory.ReservationID)
        .where(AssetHistory.AssetID == asset_id)
        .order_by(AssetHistory.CreatedAt.desc(), AssetHistory.HistoryID.desc())
    ).all()
    return [serialize_history(entry, number) for entry, number in rows]


def list_reservation_history(db: Session, reservation_id: int) -> list[dict]:
    rows = db.execute(
        select(AssetHistory, Reservation.ReservationNumber)
        .join(Reservation, Reservation.ReservationID == AssetHistory.ReservationID)
        .where(AssetHistory.ReservationID == reservation_id)
        .order_by(AssetHistory.HistoryID)
    ).all()
    return [serialize_history(entry, number) for entry, number in rows]
