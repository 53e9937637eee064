from __future__ import annotations

import logging
import random
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from models.rental_models import Asset, Equipment, Reservation, ReservationItem, ReservationItemAsset, User
from schemas.reservations import CreateReservationDto
from services.allocation_service import allocate_assets
from services.audit_service import log_audit
from services.availability_service import is_broken, resolve_availability
from services.errors import InsufficientStockError, InvalidTransitionError, NotFoundError
from services.history_service import record_asset_event
from services.occupancy_service import assigned_asset_ids, occupied_assets
from services.overlap_service import ACTIVE_STATUSES, query_overlapping, range_of
from services.repair_service import open_repair, open_return_repair

RESERVATION_LOGGER = logging.getLogger("equipment_rental.reservations")

RESERVATION_STATUSES = ("pending", "approved", "rented", "returned", "rejected", "cancelled")
RELEASING_STATUSES = frozenset({"pending", "rejected", "cancelled"})
CALENDAR_STATUSES = frozenset({"pending", "approved", "rented"})
RETURN_CONDITIONS = {
    "normal": None,
    "damaged": "damaged",
    "broken": "damaged",
    "missing_parts": "missing_parts",
    "lost": "lost",
}


def generate_reservation_number(db: Session, created_on: date | None = None) -> str:
    prefix = (created_on or date.today()).strftime("%Y%m%d")
    rows = db.execute(
        select(Reservation.ReservationNumber).where(Reservation.ReservationNumber.like(f"{prefix}-%"))
    ).scalars().all()

    max_suffix = 0
    for number in rows:
        suffix = (number or "").replace(f"{prefix}-", "", 1)
        if suffix.isdigit() and int(suffix) > max_suffix:
            max_suffix = int(suffix)
    return f"{prefix}-{max_suffix + 1:04d}"


def load_reservation(db: Session, reservation_id: int, for_update: bool = False) -> Reservation:
    stmt = (
        select(Reservation)
        .options(selectinload(Reservation.ReservationItems).selectinload(ReservationItem.AssignedAssets))
        .where(Reservation.ReservationID == reservation_id)
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    reservation = db.execute(stmt).scalars().first()
    if not reservation:
        raise NotFoundError(f"Reservation {reservation_id} not found")
    return reservation


def create_reservation(db: Session, payload: CreateReservationDto) -> Reservation:
    user = db.get(User, payload.userID)
    if not user:
        raise NotFoundError(f"User {payload.userID} not found")

    now = datetime.now()
    reservation = Reservation(
        ReservationNumber=generate_reservation_number(db),
        UserID=user.UserID,
        Status="pending",
        Purpose=payload.purpose.strip(),
        PurposeDetail=payload.purposeDetail,
        StartDate=payload.startDate,
        EndDate=payload.endDate,
        LeaderName=user.Name,
        LeaderPhone=user.Phone or "",
        LeaderStudentID=user.StudentID or "",
        CreatedDate=now,
        UpdatedDate=now,
    )
    for position, line in enumerate(payload.items):
        equipment = db.get(Equipment, line.equipmentID)
        if not equipment:
            raise NotFoundError(f"Equipment {line.equipmentID} not found")
        reservation.ReservationItems.append(
            ReservationItem(
                Position=position,
                EquipmentID=equipment.EquipmentID,
                Quantity=line.quantity,
                Name=(line.name or "").strip() or equipment.EquipmentName,
                CheckedOut=False,
                Returned=False,
            )
        )
    db.add(reservation)
    db.flush()
    log_audit(db, "Reservation", reservation.ReservationID, "Create", reservation.ReservationNumber, user_id=user.UserID)
    db.commit()
    return reservation


def check_availability(db: Session, reservation_id: int) -> dict:
    reservation = load_reservation(db, reservation_id)
    competitors = query_overlapping(db, range_of(reservation), exclude_id=reservation.ReservationID)
    occupied = occupied_assets(competitors)

    lines = []
    for item in reservation.ReservationItems:
        counts = resolve_availability(db, item.EquipmentID, occupied)
        lines.append(
            {
                "reservationItemID": item.ReservationItemID,
                "equipmentID": item.EquipmentID,
                "name": item.Name,
                "requested": int(item.Quantity or 0),
                "remaining": counts["available"],
                "total": counts["total"],
                "broken": counts["broken"],
                "rented": counts["rented"],
            }
        )
    return {
        "reservationID": reservation.ReservationID,
        "isFullyAvailable": all(line["remaining"] >= line["requested"] for line in lines),
        "items": lines,
    }


def set_status(
    db: Session,
    reservation_id: int,
    target_status: str,
    repair_note: str | None = None,
    operator_user_id: int | None = None,
    rng: random.Random | None = None,
) -> Reservation:
    target = (target_status or "").strip().lower()
    if target not in RESERVATION_STATUSES:
        raise InvalidTransitionError(f"Unknown reservation status: {target_status}")

    try:
        reservation = load_reservation(db, reservation_id, for_update=True)
        previous = reservation.Status
        if target in RELEASING_STATUSES:
            _release_assignments(db, reservation, restore_assets=previous == "rented")
        elif target == "approved":
            _approve(db, reservation, rng)
        elif target == "rented":
            _check_out(db, reservation)
        elif target == "returned":
            _mark_returned(db, reservation, repair_note)

        reservation.Status = target
        reservation.UpdatedDate = datetime.now()
        log_audit(
            db,
            "Reservation",
            reservation.ReservationID,
            "StatusChange",
            f"{previous} -> {target}",
            user_id=operator_user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    RESERVATION_LOGGER.info("Reservation %s: %s -> %s", reservation.ReservationNumber, previous, target)
    return reservation


def equipment_lock_statement(equipment_ids: Iterable[int]):
    # FOR UPDATE covers PostgreSQL/MySQL/Oracle; SQL Server drops it and needs a table hint.
    return (
        select(Equipment)
        .where(Equipment.EquipmentID.in_(sorted(set(equipment_ids))))
        .order_by(Equipment.EquipmentID)
        .with_for_update()
        .with_hint(Equipment.__table__, "WITH (UPDLOCK, ROWLOCK)", "mssql")
    )


def _lock_equipment(db: Session, equipment_ids: Iterable[int]) -> dict[int, Equipment]:
    # Row locks in id order so concurrent allocations of a type serialize.
    ids = sorted(set(equipment_ids))
    if not ids:
        return {}
    rows = db.execute(equipment_lock_statement(ids)).scalars().all()
    found = {equipment.EquipmentID: equipment for equipment in rows}
    missing = [equipment_id for equipment_id in ids if equipment_id not in found]
    if missing:
        raise NotFoundError(f"Equipment {missing[0]} not found")
    return found


def _restore_rented_assets(db: Session, asset_ids: Iterable[int]) -> None:
    now = datetime.now()
    for asset_id in asset_ids:
        asset = db.get(Asset, asset_id)
        if asset and asset.Status == "rented":
            asset.Status = "available"
            asset.UpdatedDate = now


def _release_assignments(db: Session, reservation: Reservation, restore_assets: bool) -> None:
    released: list[int] = []
    for item in reservation.ReservationItems:
        released.extend(assigned_asset_ids(item))
        item.AssignedAssets = []
        item.CheckedOut = False
    if restore_assets:
        _restore_rented_assets(db, released)


def _approve(db: Session, reservation: Reservation, rng: random.Random | None) -> None:
    items = list(reservation.ReservationItems)
    equipment_by_id = _lock_equipment(db, [item.EquipmentID for item in items])
    target = range_of(reservation)

    picks: dict[int, list[int]] = {}
    claimed_here: set[int] = set()
    for item in items:
        competitors = query_overlapping(
            db, target, equipment_id=item.EquipmentID, exclude_id=reservation.ReservationID
        )
        occupied = occupied_assets(competitors, equipment_id=item.EquipmentID) | claimed_here
        picked = allocate_assets(db, equipment_by_id[item.EquipmentID], occupied, int(item.Quantity or 0), rng)
        claimed_here.update(picked)
        picks[item.ReservationItemID] = picked

    # Every line item is satisfiable; only now touch the bindings.
    previous = [asset_id for item in items for asset_id in assigned_asset_ids(item)]
    if reservation.Status == "rented":
        _restore_rented_assets(db, previous)
    for asset_id in previous:
        if asset_id not in claimed_here:
            record_asset_event(db, db.get(Asset, asset_id), reservation, "unassigned")
    for item in items:
        item.AssignedAssets = [ReservationItemAsset(AssetID=asset_id) for asset_id in picks[item.ReservationItemID]]
        item.CheckedOut = False
        for asset_id in picks[item.ReservationItemID]:
            if asset_id not in previous:
                record_asset_event(db, db.get(Asset, asset_id), reservation, "rented")

    RESERVATION_LOGGER.info(
        "Reservation %s approved with %s assets",
        reservation.ReservationNumber,
        len(claimed_here),
    )


def _check_out(db: Session, reservation: Reservation) -> None:
    if reservation.Status != "approved":
        raise InvalidTransitionError(
            f"Reservation {reservation.ReservationNumber} must be approved before check-out "
            f"(current status: {reservation.Status})."
        )
    items = list(reservation.ReservationItems)
    equipment_by_id = _lock_equipment(db, [item.EquipmentID for item in items])
    target = range_of(reservation)

    requested_by_type: dict[int, int] = {}
    for item in items:
        requested_by_type[item.EquipmentID] = requested_by_type.get(item.EquipmentID, 0) + int(item.Quantity or 0)

    for equipment_id, requested in requested_by_type.items():
        competitors = query_overlapping(db, target, equipment_id=equipment_id, exclude_id=reservation.ReservationID)
        counts = resolve_availability(db, equipment_id, occupied_assets(competitors, equipment_id=equipment_id))
        if counts["available"] < requested:
            raise InsufficientStockError(equipment_by_id[equipment_id].EquipmentName, requested, counts["available"])

    now = datetime.now()
    for item in items:
        item.CheckedOut = True
        for asset_id in assigned_asset_ids(item):
            asset = db.get(Asset, asset_id)
            if asset and asset.Status == "available":
                asset.Status = "rented"
                asset.UpdatedDate = now


def _mark_returned(db: Session, reservation: Reservation, repair_note: str | None) -> None:
    if reservation.Status == "rented":
        _restore_rented_assets(
            db, [asset_id for item in reservation.ReservationItems for asset_id in assigned_asset_ids(item)]
        )
    for item in reservation.ReservationItems:
        item.Returned = True
    note = (repair_note or "").strip()
    if note:
        repair = open_repair(db, "damaged", note, reservation=reservation)
        RESERVATION_LOGGER.info(
            "Repair %s opened from return of reservation %s",
            repair.RepairID,
            reservation.ReservationNumber,
        )


def process_return(db: Session, reservation_id: int, returns: Iterable, operator_user_id: int | None = None) -> dict:
    """Apply per-asset return conditions and report the outcome of each entry.

    An entry that cannot be applied (unknown asset, asset not bound to this
    reservation, unknown condition) is reported and skipped; the others are
    still applied and committed together.
    """
    try:
        reservation = load_reservation(db, reservation_id, for_update=True)
        bound = {
            asset_id: item
            for item in reservation.ReservationItems
            for asset_id in assigned_asset_ids(item)
        }
        results: list[dict] = []
        seen: set[int] = set()
        now = datetime.now()

        for entry in returns:
            asset_id = entry.assetID
            condition = (entry.condition or "").strip().lower()
            note = (entry.note or "").strip() or None
            asset = db.get(Asset, asset_id)

            error = None
            if asset is None:
                error = f"Asset {asset_id} not found"
            elif asset_id not in bound:
                error = f"Asset {asset_id} is not assigned to reservation {reservation.ReservationNumber}"
            elif asset_id in seen:
                error = f"Asset {asset_id} is listed more than once"
            elif condition not in RETURN_CONDITIONS:
                error = f"Unknown return condition: {entry.condition}"
            if error:
                RESERVATION_LOGGER.warning("Return of reservation %s: %s", reservation.ReservationNumber, error)
                results.append({"assetID": asset_id, "status": "error", "message": error})
                continue

            seen.add(asset_id)
            repair_id = None
            damage_type = RETURN_CONDITIONS[condition]
            if damage_type is None:
                asset.Status = "available"
            else:
                asset.Status = "lost" if condition == "lost" else "maintenance"
                repair_id = open_return_repair(db, reservation, asset, damage_type, note).RepairID
            asset.Note = note
            asset.UpdatedDate = now
            record_asset_event(db, asset, reservation, "returned", condition, note)
            results.append({"assetID": asset_id, "status": "ok", "condition": condition, "repairID": repair_id})

        for item in reservation.ReservationItems:
            ids = assigned_asset_ids(item)
            if ids and all(asset_id in seen for asset_id in ids):
                item.Returned = True

        bound_items = [item for item in reservation.ReservationItems if assigned_asset_ids(item)]
        if reservation.Status == "rented" and bound_items and all(item.Returned for item in bound_items):
            reservation.Status = "returned"
            reservation.UpdatedDate = now
            log_audit(db, "Reservation", reservation.ReservationID, "StatusChange", "rented -> returned", user_id=operator_user_id)

        failed = sum(1 for result in results if result["status"] == "error")
        processed = len(results) - failed
        log_audit(
            db,
            "Reservation",
            reservation.ReservationID,
            "Return",
            f"processed={processed} failed={failed}",
            user_id=operator_user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if failed == 0:
        outcome = "ok"
    elif processed:
        outcome = "partial"
    else:
        outcome = "failed"
    return {
        "reservationID": reservation.ReservationID,
        "reservationStatus": reservation.Status,
        "status": outcome,
        "processed": processed,
        "failed": failed,
        "items": results,
    }


def update_assignment(
    db: Session,
    reservation_id: int,
    reservation_item_id: int,
    asset_ids: list[int],
    operator_user_id: int | None = None,
) -> Reservation:
    try:
        reservation = load_reservation(db, reservation_id, for_update=True)
        if reservation.Status not in ACTIVE_STATUSES:
            raise InvalidTransitionError(
                f"Assignments can only change on approved or rented reservations (current status: {reservation.Status})."
            )
        item = next(
            (line for line in reservation.ReservationItems if line.ReservationItemID == reservation_item_id),
            None,
        )
        if item is None:
            raise NotFoundError(f"Reservation item {reservation_item_id} not found")
        if len(set(asset_ids)) != len(asset_ids):
            raise InvalidTransitionError("The same asset is listed more than once.")
        if len(asset_ids) > int(item.Quantity or 0):
            raise InvalidTransitionError(
                f"{item.Name}: {len(asset_ids)} assets exceed the requested quantity {item.Quantity}."
            )

        _lock_equipment(db, [item.EquipmentID])
        old_ids = assigned_asset_ids(item)
        competitors = query_overlapping(
            db, range_of(reservation), equipment_id=item.EquipmentID, exclude_id=reservation.ReservationID
        )
        occupied = occupied_assets(competitors, equipment_id=item.EquipmentID)
        for sibling in reservation.ReservationItems:
            if sibling is not item:
                occupied.update(assigned_asset_ids(sibling))

        new_assets = []
        for asset_id in asset_ids:
            asset = db.get(Asset, asset_id)
            if asset is None or asset.EquipmentID != item.EquipmentID:
                raise InvalidTransitionError(f"Asset {asset_id} is not a unit of {item.Name}.")
            if asset_id not in old_ids and (is_broken(asset) or asset_id in occupied):
                label = asset.ManagementCode or asset.SerialNumber
                raise InvalidTransitionError(f"Asset {label} is not available for this period.")
            new_assets.append(asset)

        checked_out = reservation.Status == "rented"
        now = datetime.now()
        for asset_id in old_ids:
            if asset_id in asset_ids:
                continue
            asset = db.get(Asset, asset_id)
            if asset is None:
                continue
            if checked_out and asset.Status == "rented":
                asset.Status = "available"
                asset.UpdatedDate = now
            record_asset_event(db, asset, reservation, "unassigned")
        for asset in new_assets:
            if asset.AssetID in old_ids:
                continue
            if checked_out and asset.Status == "available":
                asset.Status = "rented"
                asset.UpdatedDate = now
            record_asset_event(db, asset, reservation, "rented")

        item.AssignedAssets = [ReservationItemAsset(AssetID=asset_id) for asset_id in asset_ids]
        log_audit(
            db,
            "Reservation",
            reservation.ReservationID,
            "AssignmentUpdate",
            f"item={reservation_item_id} assets={asset_ids}",
            user_id=operator_user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return reservation


def list_reservations(db: Session, status: str | None = None, user_id: int | None = None) -> list[Reservation]:
    stmt = (
        select(Reservation)
        .options(selectinload(Reservation.ReservationItems).selectinload(ReservationItem.AssignedAssets))
        .order_by(Reservation.ReservationID.desc())
    )
    if status:
        stmt = stmt.where(Reservation.Status == status)
    if user_id is not None:
        stmt = stmt.where(Reservation.UserID == user_id)
    return db.execute(stmt).scalars().all()


def reservations_for_period(db: Session, start: str, end: str) -> list[Reservation]:
    # Calendar view: inclusive day overlap on the date part of the keys.
    return db.execute(
        select(Reservation)
        .options(selectinload(Reservation.ReservationItems).selectinload(ReservationItem.AssignedAssets))
        .where(Reservation.Status.notin_(["rejected", "cancelled"]))
        .where(func.substr(Reservation.StartDate, 1, 10) <= end[:10])
        .where(func.substr(Reservation.EndDate, 1, 10) >= start[:10])
        .order_by(Reservation.StartDate)
    ).scalars().all()


def equipment_calendar(db: Session, equipment_id: int, start: str, end: str) -> dict:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFoundError(f"Equipment {equipment_id} not found")
    entries = []
    for reservation in reservations_for_period(db, start, end):
        if reservation.Status not in CALENDAR_STATUSES:
            continue
        quantity = sum(
            int(item.Quantity or 0)
            for item in reservation.ReservationItems
            if item.EquipmentID == equipment_id
        )
        if not quantity:
            continue
        entries.append(
            {
                "reservationID": reservation.ReservationID,
                "leaderName": reservation.LeaderName,
                "purposeDetail": reservation.PurposeDetail,
                "startDate": reservation.StartDate,
                "endDate": reservation.EndDate,
                "quantity": quantity,
                "status": reservation.Status,
            }
        )
    return {"equipmentID": equipment_id, "totalQuantity": equipment.TotalQuantity, "reservations": entries}


def serialize_reservation(reservation: Reservation) -> dict:
    return {
        "reservationID": reservation.ReservationID,
        "reservationNumber": reservation.ReservationNumber,
        "userID": reservation.UserID,
        "status": reservation.Status,
        "purpose": reservation.Purpose,
        "purposeDetail": reservation.PurposeDetail,
        "startDate": reservation.StartDate,
        "endDate": reservation.EndDate,
        "leaderName": reservation.LeaderName,
        "leaderPhone": reservation.LeaderPhone,
        "leaderStudentID": reservation.LeaderStudentID,
        "createdDate": reservation.CreatedDate,
        "updatedDate": reservation.UpdatedDate,
        "items": [
            {
                "reservationItemID": item.ReservationItemID,
                "equipmentID": item.EquipmentID,
                "name": item.Name,
                "quantity": item.Quantity,
                "checkedOut": bool(item.CheckedOut),
                "returned": bool(item.Returned),
                "assignedAssets": assigned_asset_ids(item),
            }
            for item in reservation.ReservationItems
        ],
    }
