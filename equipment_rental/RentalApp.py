import logging
import os
import random
from contextlib import asynccontextmanager
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.orm import Session

load_dotenv()

from db.deps import get_rental_db
from db.session import init_schema
from models.rental_models import Equipment, User
from schemas.equipment import AssetBatchCreate, AssetCreate, AssetUpdate, EquipmentCreate
from schemas.repairs import (
    ChargeDecisionRequest,
    EstimateRequest,
    PaymentConfirmationRequest,
    RepairCompletionRequest,
    RepairCreate,
    StageRevertRequest,
)
from schemas.reservations import (
    AssignmentUpdateRequest,
    CreateReservationDto,
    ReturnRequest,
    StatusChangeRequest,
)
from schemas.users import UserCreate
from services.audit_service import log_audit
from services.equipment_service import (
    create_asset,
    get_asset_or_404,
    get_equipment_or_404,
    list_assets,
    list_equipment,
    normalize_asset_status,
    serialize_asset,
    serialize_equipment,
)
from services.errors import InsufficientStockError, InvalidTransitionError, NotFoundError
from services.history_service import list_asset_history, list_reservation_history
from services.overlap_service import normalize_date_key
from services.repair_service import (
    complete_repair,
    confirm_payment,
    create_repair,
    decide_charge,
    get_repair_or_404,
    list_repairs,
    request_estimate,
    revert_stage,
    serialize_repair,
)
from services.reservation_service import (
    check_availability,
    create_reservation,
    equipment_calendar,
    list_reservations,
    load_reservation,
    process_return,
    reservations_for_period,
    serialize_reservation,
    set_status,
    update_assignment,
)

APP_LOGGER = logging.getLogger("equipment_rental")
APP_LOGGER.setLevel((os.environ.get("RENTAL_LOG_LEVEL") or "INFO").strip().upper())


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if _env_flag("RENTAL_AUTO_CREATE_SCHEMA", "true"):
        init_schema()
    yield


app = FastAPI(lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _allocation_rng() -> random.Random | None:
    raw = (os.environ.get("ALLOCATION_RANDOM_SEED") or "").strip()
    if not raw:
        return None
    return random.Random(int(raw))


@app.exception_handler(NotFoundError)
async def _not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InsufficientStockError)
async def _insufficient_stock_handler(request: Request, exc: InsufficientStockError):
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "equipmentName": exc.equipment_name,
            "requested": exc.requested,
            "available": exc.available,
        },
    )


@app.exception_handler(InvalidTransitionError)
async def _invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        APP_LOGGER.exception("Database health check failed")
        raise HTTPException(status_code=503, detail="Database unavailable") from exc
    return {"status": "ok", "database": "ok"}


@app.get("/api/users")
def get_users(db: Session = Depends(get_rental_db)):
    users = db.execute(select(User).order_by(User.Name)).scalars().all()
    return [
        {
            "userID": user.UserID,
            "name": user.Name,
            "email": user.Email,
            "phone": user.Phone,
            "studentID": user.StudentID,
            "role": user.Role,
        }
        for user in users
    ]


@app.post("/api/users")
def create_user(payload: UserCreate, db: Session = Depends(get_rental_db)):
    user = User(
        Name=payload.name.strip(),
        Email=payload.email,
        Phone=payload.phone,
        StudentID=payload.studentID,
        Department=payload.department,
        Role=payload.role,
        CreatedDate=datetime.now(),
    )
    db.add(user)
    db.commit()
    return {"message": "User created", "userID": user.UserID}


@app.get("/api/equipment")
def get_equipment(db: Session = Depends(get_rental_db)):
    return [serialize_equipment(equipment) for equipment in list_equipment(db)]


@app.post("/api/equipment")
def create_equipment(payload: EquipmentCreate, db: Session = Depends(get_rental_db)):
    equipment = Equipment(
        EquipmentName=payload.equipmentName.strip(),
        CategoryName=payload.categoryName,
        Manufacturer=payload.manufacturer,
        Description=payload.description,
        SortOrder=payload.sortOrder,
        TotalQuantity=0,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(equipment)
    db.flush()
    log_audit(db, "Equipment", equipment.EquipmentID, "Create", equipment.EquipmentName)
    db.commit()
    return serialize_equipment(equipment)


@app.get("/api/equipment/{equipment_id}/assets")
def get_equipment_assets(equipment_id: int, db: Session = Depends(get_rental_db)):
    get_equipment_or_404(db, equipment_id)
    return [serialize_asset(asset) for asset in list_assets(db, equipment_id)]


@app.post("/api/equipment/{equipment_id}/assets")
def create_equipment_asset(equipment_id: int, payload: AssetCreate, db: Session = Depends(get_rental_db)):
    equipment = get_equipment_or_404(db, equipment_id)
    try:
        asset = create_asset(db, equipment, payload.serialNumber, payload.managementCode, payload.status, payload.note)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return serialize_asset(asset)


@app.post("/api/equipment/{equipment_id}/assets/batch")
def create_equipment_assets_batch(equipment_id: int, payload: AssetBatchCreate, db: Session = Depends(get_rental_db)):
    equipment = get_equipment_or_404(db, equipment_id)
    serials = [serial for serial in payload.serialNumbers if serial.strip()]
    serials.extend([""] * payload.count)
    if not serials:
        raise HTTPException(status_code=400, detail="Provide serialNumbers or a count.")
    created = [create_asset(db, equipment, serial) for serial in serials]
    db.commit()
    return [serialize_asset(asset) for asset in created]


@app.get("/api/equipment/{equipment_id}/calendar")
def get_equipment_calendar(
    equipment_id: int,
    start: str = Query(..., alias="startDate"),
    end: str = Query(..., alias="endDate"),
    db: Session = Depends(get_rental_db),
):
    return equipment_calendar(db, equipment_id, _date_key_or_400(start), _date_key_or_400(end))


@app.put("/api/assets/{asset_id}")
def update_asset(asset_id: int, payload: AssetUpdate, db: Session = Depends(get_rental_db)):
    asset = get_asset_or_404(db, asset_id)
    data = payload.model_dump(exclude_unset=True)
    try:
        if "status" in data:
            asset.Status = normalize_asset_status(data["status"])
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if "serialNumber" in data:
        asset.SerialNumber = (data["serialNumber"] or "").strip() or asset.SerialNumber
    if "managementCode" in data:
        asset.ManagementCode = (data["managementCode"] or "").strip() or None
    if "note" in data:
        asset.Note = data["note"]
    asset.UpdatedDate = datetime.now()
    log_audit(db, "Asset", asset.AssetID, "Update", ",".join(sorted(data)))
    db.commit()
    return serialize_asset(asset)


@app.get("/api/assets/{asset_id}/history")
def get_asset_history(asset_id: int, db: Session = Depends(get_rental_db)):
    get_asset_or_404(db, asset_id)
    return list_asset_history(db, asset_id)


@app.get("/api/reservations")
def get_reservations(
    status: str | None = Query(None),
    user_id: int | None = Query(None, alias="userID"),
    db: Session = Depends(get_rental_db),
):
    return [serialize_reservation(reservation) for reservation in list_reservations(db, status, user_id)]


@app.get("/api/reservations/period")
def get_reservations_for_period(
    start: str = Query(..., alias="startDate"),
    end: str = Query(..., alias="endDate"),
    db: Session = Depends(get_rental_db),
):
    rows = reservations_for_period(db, _date_key_or_400(start), _date_key_or_400(end))
    return [serialize_reservation(reservation) for reservation in rows]


@app.post("/api/reservations")
def post_reservation(payload: CreateReservationDto, db: Session = Depends(get_rental_db)):
    reservation = create_reservation(db, payload)
    return serialize_reservation(reservation)


@app.get("/api/reservations/{reservation_id}")
def get_reservation(reservation_id: int, db: Session = Depends(get_rental_db)):
    return serialize_reservation(load_reservation(db, reservation_id))


@app.get("/api/reservations/{reservation_id}/availability")
def get_reservation_availability(reservation_id: int, db: Session = Depends(get_rental_db)):
    return check_availability(db, reservation_id)


@app.post("/api/reservations/{reservation_id}/status")
def change_reservation_status(reservation_id: int, payload: StatusChangeRequest, db: Session = Depends(get_rental_db)):
    reservation = set_status(
        db,
        reservation_id,
        payload.status,
        repair_note=payload.repairNote,
        operator_user_id=payload.operatorUserID,
        rng=_allocation_rng(),
    )
    return {"message": f"Reservation {reservation.Status}", "reservation": serialize_reservation(reservation)}


@app.post("/api/reservations/{reservation_id}/return")
def return_reservation(reservation_id: int, payload: ReturnRequest, db: Session = Depends(get_rental_db)):
    return process_return(db, reservation_id, payload.returns, operator_user_id=payload.operatorUserID)


@app.post("/api/reservations/{reservation_id}/assignment")
def change_reservation_assignment(
    reservation_id: int,
    payload: AssignmentUpdateRequest,
    db: Session = Depends(get_rental_db),
):
    reservation = update_assignment(
        db,
        reservation_id,
        payload.reservationItemID,
        payload.assetIDs,
        operator_user_id=payload.operatorUserID,
    )
    return serialize_reservation(reservation)


@app.get("/api/reservations/{reservation_id}/history")
def get_reservation_history(reservation_id: int, db: Session = Depends(get_rental_db)):
    load_reservation(db, reservation_id)
    return list_reservation_history(db, reservation_id)


@app.get("/api/repairs")
def get_repairs(stage: str | None = Query(None), db: Session = Depends(get_rental_db)):
    return [serialize_repair(repair) for repair in list_repairs(db, stage)]


@app.get("/api/repairs/{repair_id}")
def get_repair(repair_id: int, db: Session = Depends(get_rental_db)):
    return serialize_repair(get_repair_or_404(db, repair_id))


@app.post("/api/repairs")
def post_repair(payload: RepairCreate, db: Session = Depends(get_rental_db)):
    repair = create_repair(
        db,
        payload.damageType,
        payload.damageDescription,
        reservation_id=payload.reservationID,
        equipment_id=payload.equipmentID,
        asset_id=payload.assetID,
        operator_user_id=payload.operatorUserID,
    )
    return serialize_repair(repair)


@app.post("/api/repairs/{repair_id}/charge")
def post_repair_charge(repair_id: int, payload: ChargeDecisionRequest, db: Session = Depends(get_rental_db)):
    return serialize_repair(decide_charge(db, repair_id, payload.chargeType, payload.operatorUserID))


@app.post("/api/repairs/{repair_id}/estimate")
def post_repair_estimate(repair_id: int, payload: EstimateRequest, db: Session = Depends(get_rental_db)):
    return serialize_repair(request_estimate(db, repair_id, payload.estimateMemo, payload.operatorUserID))


@app.post("/api/repairs/{repair_id}/payment")
def post_repair_payment(repair_id: int, payload: PaymentConfirmationRequest, db: Session = Depends(get_rental_db)):
    return serialize_repair(confirm_payment(db, repair_id, payload.finalAmount, payload.operatorUserID))


@app.post("/api/repairs/{repair_id}/complete")
def post_repair_complete(repair_id: int, payload: RepairCompletionRequest, db: Session = Depends(get_rental_db)):
    repair = complete_repair(db, repair_id, payload.repairResult, payload.adminMemo, payload.operatorUserID)
    return serialize_repair(repair)


@app.post("/api/repairs/{repair_id}/revert")
def post_repair_revert(repair_id: int, payload: StageRevertRequest, db: Session = Depends(get_rental_db)):
    return serialize_repair(revert_stage(db, repair_id, payload.targetStage, payload.operatorUserID))


def _date_key_or_400(raw: str) -> str:
    try:
        return normalize_date_key(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid date: {raw}") from exc
