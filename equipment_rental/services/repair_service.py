"""Repair ticket workflow.

A ticket moves strictly forward through ``REPAIR_STAGES``; each forward step
stamps its own timestamp and payload. ``revert_stage`` rewinds to an earlier
stage and clears the payload of the stages it rewinds past, but does not undo
any change already applied to the linked asset.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import Asset, Equipment, Repair, Reservation
from services.audit_service import log_audit
from services.errors import InvalidTransitionError, NotFoundError

REPAIR_LOGGER = logging.getLogger("equipment_rental.repairs")

REPAIR_STAGES = (
    "damage_confirmed",
    "charge_decided",
    "estimate_requested",
    "payment_confirmed",
    "completed",
)
DAMAGE_TYPES = {"damaged", "lost", "missing_parts"}
CHARGE_TYPES = {"student_charge", "department_handle"}
REPAIR_RESULTS = {"repaired", "replaced", "disposed"}

# Fields written when a ticket enters the stage; cleared when reverted past it.
STAGE_FIELDS = {
    "charge_decided": ("ChargeType", "ChargeDecidedAt"),
    "estimate_requested": ("EstimateMemo", "EstimateRequestedAt"),
    "payment_confirmed": ("FinalAmount", "PaymentConfirmedAt"),
    "completed": ("RepairResult", "CompletedAt"),
}


def stage_index(stage: str) -> int:
    try:
        return REPAIR_STAGES.index(stage)
    except ValueError as exc:
        raise InvalidTransitionError(f"Unknown repair stage: {stage}") from exc


def get_repair_or_404(db: Session, repair_id: int) -> Repair:
    repair = db.get(Repair, repair_id)
    if not repair:
        raise NotFoundError(f"Repair {repair_id} not found")
    return repair


def find_open_repair(db: Session, asset_id: int) -> Repair | None:
    return db.execute(
        select(Repair)
        .where(Repair.AssetID == asset_id)
        .where(Repair.Stage != "completed")
        .order_by(Repair.RepairID)
    ).scalars().first()


def _snapshot(
    repair: Repair,
    reservation: Reservation | None,
    equipment: Equipment | None,
    asset: Asset | None,
) -> None:
    if reservation is not None:
        repair.ReservationID = reservation.ReservationID
        repair.ReservationNumber = reservation.ReservationNumber
        repair.LeaderName = reservation.LeaderName
        repair.LeaderPhone = reservation.LeaderPhone
    if equipment is not None:
        repair.EquipmentID = equipment.EquipmentID
        repair.EquipmentName = equipment.EquipmentName
    if asset is not None:
        repair.AssetID = asset.AssetID
        repair.SerialNumber = asset.SerialNumber
        repair.EquipmentName = repair.EquipmentName or asset.EquipmentName


def open_repair(
    db: Session,
    damage_type: str,
    description: str | None,
    reservation: Reservation | None = None,
    equipment: Equipment | None = None,
    asset: Asset | None = None,
) -> Repair:
    if damage_type not in DAMAGE_TYPES:
        raise InvalidTransitionError(f"Unknown damage type: {damage_type}")
    now = datetime.now()
    repair = Repair(
        Stage="damage_confirmed",
        DamageType=damage_type,
        DamageDescription=(description or "").strip() or None,
        DamageConfirmedAt=now,
        IsFixed=False,
        CreatedAt=now,
        UpdatedAt=now,
    )
    _snapshot(repair, reservation, equipment, asset)
    db.add(repair)
    db.flush()
    return repair


def open_return_repair(
    db: Session,
    reservation: Reservation,
    asset: Asset,
    damage_type: str,
    description: str | None,
) -> Repair:
    existing = find_open_repair(db, asset.AssetID)
    if existing:
        # One open ticket per asset: fold the new damage report into it.
        note = (description or "").strip()
        if note:
            existing.DamageDescription = (
                (existing.DamageDescription + "\n" if existing.DamageDescription else "") + note
            )
        existing.UpdatedAt = datetime.now()
        return existing
    equipment = db.get(Equipment, asset.EquipmentID)
    return open_repair(db, damage_type, description, reservation=reservation, equipment=equipment, asset=asset)


def create_repair(
    db: Session,
    damage_type: str,
    description: str | None,
    reservation_id: int | None = None,
    equipment_id: int | None = None,
    asset_id: int | None = None,
    operator_user_id: int | None = None,
) -> Repair:
    reservation = None
    if reservation_id is not None:
        reservation = db.get(Reservation, reservation_id)
        if not reservation:
            raise NotFoundError(f"Reservation {reservation_id} not found")

    asset = None
    if asset_id is not None:
        asset = db.get(Asset, asset_id)
        if not asset:
            raise NotFoundError(f"Asset {asset_id} not found")
        if find_open_repair(db, asset.AssetID):
            raise InvalidTransitionError(f"Asset {asset.AssetID} already has an open repair.")
        equipment_id = equipment_id or asset.EquipmentID

    equipment = None
    if equipment_id is not None:
        equipment = db.get(Equipment, equipment_id)
        if not equipment:
            raise NotFoundError(f"Equipment {equipment_id} not found")

    try:
        repair = open_repair(db, damage_type, description, reservation=reservation, equipment=equipment, asset=asset)
        if asset is not None:
            asset.Status = "maintenance"
            asset.UpdatedDate = datetime.now()
        log_audit(db, "Repair", repair.RepairID, "Create", f"Manual repair ({damage_type})", user_id=operator_user_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    REPAIR_LOGGER.info("Repair %s opened manually for asset %s", repair.RepairID, asset_id)
    return repair


def _advance(db: Session, repair_id: int, target_stage: str) -> Repair:
    repair = get_repair_or_404(db, repair_id)
    expected = REPAIR_STAGES[stage_index(target_stage) - 1]
    if repair.Stage != expected:
        raise InvalidTransitionError(
            f"Repair {repair.RepairID} is at '{repair.Stage}'; '{target_stage}' requires '{expected}'."
        )
    repair.Stage = target_stage
    repair.UpdatedAt = datetime.now()
    return repair


def decide_charge(db: Session, repair_id: int, charge_type: str, operator_user_id: int | None = None) -> Repair:
    if charge_type not in CHARGE_TYPES:
        raise InvalidTransitionError(f"Unknown charge type: {charge_type}")
    try:
        repair = _advance(db, repair_id, "charge_decided")
        repair.ChargeType = charge_type
        repair.ChargeDecidedAt = repair.UpdatedAt
        log_audit(db, "Repair", repair.RepairID, "ChargeDecided", charge_type, user_id=operator_user_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return repair


def request_estimate(db: Session, repair_id: int, estimate_memo: str, operator_user_id: int | None = None) -> Repair:
    memo = (estimate_memo or "").strip()
    if not memo:
        raise InvalidTransitionError("Estimate memo is required.")
    try:
        repair = _advance(db, repair_id, "estimate_requested")
        repair.EstimateMemo = memo
        repair.EstimateRequestedAt = repair.UpdatedAt
        log_audit(db, "Repair", repair.RepairID, "EstimateRequested", None, user_id=operator_user_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return repair


def confirm_payment(db: Session, repair_id: int, final_amount, operator_user_id: int | None = None) -> Repair:
    amount = Decimal(str(final_amount or 0))
    if amount < 0:
        raise InvalidTransitionError("Final amount cannot be negative.")
    try:
        repair = _advance(db, repair_id, "payment_confirmed")
        repair.FinalAmount = amount
        repair.PaymentConfirmedAt = repair.UpdatedAt
        log_audit(db, "Repair", repair.RepairID, "PaymentConfirmed", f"amount={amount}", user_id=operator_user_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return repair


def complete_repair(
    db: Session,
    repair_id: int,
    repair_result: str,
    admin_memo: str | None = None,
    operator_user_id: int | None = None,
) -> Repair:
    if repair_result not in REPAIR_RESULTS:
        raise InvalidTransitionError(f"Unknown repair result: {repair_result}")
    try:
        repair = _advance(db, repair_id, "completed")
        repair.RepairResult = repair_result
        repair.CompletedAt = repair.UpdatedAt
        repair.AdminMemo = (admin_memo or "").strip() or repair.AdminMemo
        repair.IsFixed = True

        if repair.AssetID is not None:
            asset = db.get(Asset, repair.AssetID)
            if asset:
                if repair_result == "repaired":
                    asset.Status = "available"
                    asset.Note = None
                else:
                    asset.Status = "broken"
                    asset.Note = f"{repair_result.capitalize()} by repair #{repair.RepairID}"
                asset.UpdatedDate = repair.UpdatedAt

        log_audit(db, "Repair", repair.RepairID, "Completed", repair_result, user_id=operator_user_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    REPAIR_LOGGER.info("Repair %s completed (%s)", repair.RepairID, repair_result)
    return repair


def revert_stage(db: Session, repair_id: int, target_stage: str, operator_user_id: int | None = None) -> Repair:
    try:
        repair = get_repair_or_404(db, repair_id)
        target_idx = stage_index(target_stage)
        current_idx = stage_index(repair.Stage)
        if target_idx >= current_idx:
            raise InvalidTransitionError(
                f"Cannot revert repair {repair.RepairID} from '{repair.Stage}' to '{target_stage}'."
            )
        for stage in REPAIR_STAGES[target_idx + 1:current_idx + 1]:
            for field in STAGE_FIELDS.get(stage, ()):
                setattr(repair, field, None)
        repair.Stage = target_stage
        repair.IsFixed = False
        repair.UpdatedAt = datetime.now()
        log_audit(
            db,
            "Repair",
            repair.RepairID,
            "Revert",
            f"{REPAIR_STAGES[current_idx]} -> {target_stage}",
            user_id=operator_user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return repair


def list_repairs(db: Session, stage: str | None = None) -> list[Repair]:
    stmt = select(Repair).order_by(Repair.RepairID.desc())
    if stage:
        stage_index(stage)
        stmt = stmt.where(Repair.Stage == stage)
    return db.execute(stmt).scalars().all()


def serialize_repair(repair: Repair) -> dict:
    return {
        "repairID": repair.RepairID,
        "reservationID": repair.ReservationID,
        "reservationNumber": repair.ReservationNumber or "-",
        "equipmentID": repair.EquipmentID,
        "assetID": repair.AssetID,
        "equipmentName": repair.EquipmentName,
        "serialNumber": repair.SerialNumber,
        "leaderName": repair.LeaderName,
        "leaderPhone": repair.LeaderPhone,
        "stage": repair.Stage,
        "damageType": repair.DamageType,
        "damageDescription": repair.DamageDescription,
        "damageConfirmedAt": repair.DamageConfirmedAt,
        "chargeType": repair.ChargeType,
        "chargeDecidedAt": repair.ChargeDecidedAt,
        "estimateMemo": repair.EstimateMemo,
        "estimateRequestedAt": repair.EstimateRequestedAt,
        "finalAmount": float(repair.FinalAmount) if repair.FinalAmount is not None else None,
        "paymentConfirmedAt": repair.PaymentConfirmedAt,
        "repairResult": repair.RepairResult,
        "completedAt": repair.CompletedAt,
        "adminMemo": repair.AdminMemo,
        "isFixed": bool(repair.IsFixed),
        "createdAt": repair.CreatedAt,
        "updatedAt": repair.UpdatedAt,
    }
