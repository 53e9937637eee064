import itertools
import os
import sys
from pathlib import Path

os.environ.setdefault("RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("RENTAL_AUTO_CREATE_SCHEMA", "false")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy.orm import sessionmaker

from db.base import Base
from db.session import build_engine
from models.rental_models import Asset, Equipment, Reservation, ReservationItem, User

_NUMBERS = itertools.count(1)


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    return factory()


def close_session(db) -> None:
    engine = db.get_bind()
    db.close()
    engine.dispose()


def add_user(db, name="Kim Minji", phone="010-1234-5678", student_id="20240001") -> User:
    user = User(Name=name, Phone=phone, StudentID=student_id, Email=f"{student_id}@example.edu")
    db.add(user)
    db.commit()
    return user


def add_equipment(db, name="Camera X", statuses=("available", "available")) -> tuple[Equipment, list[Asset]]:
    equipment = Equipment(EquipmentName=name, TotalQuantity=len(statuses))
    db.add(equipment)
    db.flush()
    assets = []
    for index, status in enumerate(statuses, start=1):
        asset = Asset(
            EquipmentID=equipment.EquipmentID,
            EquipmentName=name,
            SerialNumber=str(index),
            Status=status,
        )
        db.add(asset)
        assets.append(asset)
    db.commit()
    return equipment, assets


def add_reservation(db, user, start, end, lines, status="pending", number=None) -> Reservation:
    reservation = Reservation(
        ReservationNumber=number or f"20250101-{next(_NUMBERS):04d}",
        UserID=user.UserID,
        Status=status,
        Purpose="Short film",
        PurposeDetail="Graduation project",
        StartDate=start,
        EndDate=end,
        LeaderName=user.Name,
        LeaderPhone=user.Phone,
        LeaderStudentID=user.StudentID,
    )
    for position, (equipment, quantity) in enumerate(lines):
        reservation.ReservationItems.append(
            ReservationItem(
                Position=position,
                EquipmentID=equipment.EquipmentID,
                Quantity=quantity,
                Name=equipment.EquipmentName,
            )
        )
    db.add(reservation)
    db.commit()
    return reservation


def bound_ids(reservation) -> list[list[int]]:
    return [[link.AssetID for link in item.AssignedAssets] for item in reservation.ReservationItems]
