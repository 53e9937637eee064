"""Interval overlap detection for reservation date ranges.

Ranges are compared as string date keys (``YYYY-MM-DD`` or
``YYYY-MM-DD HH:MM``), so lexical order is chronological order.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Iterable, NamedTuple

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.rental_models import Reservation, ReservationItem

ACTIVE_STATUSES = frozenset({"approved", "rented"})
_INPUT_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d")


class DateRange(NamedTuple):
    start: str
    end: str


def normalize_date_key(value: str | date | datetime) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    if isinstance(value, date):
        return value.isoformat()
    raw = str(value or "").strip().replace("T", " ")
    if not raw:
        raise ValueError("date value is empty")
    raw = raw.rstrip("Z").split(".", 1)[0]
    for fmt in _INPUT_FORMATS:
        try:
            parsed = datetime.strptime(raw, fmt)
        except ValueError:
            continue
        # Keys compare lexically, so always store the zero-padded form.
        return parsed.strftime("%Y-%m-%d" if fmt == "%Y-%m-%d" else "%Y-%m-%d %H:%M")
    raise ValueError(f"Invalid date value: {value}")


def range_of(reservation) -> DateRange:
    return DateRange(reservation.StartDate, reservation.EndDate)


def ranges_overlap(target: DateRange, candidate: DateRange) -> bool:
    # Strict test: a candidate ending exactly when the target starts is free.
    return candidate.start < target.end and candidate.end > target.start


def find_overlapping(target: DateRange, reservations: Iterable, exclude_id: int | None = None) -> list:
    overlapping = []
    for reservation in reservations:
        if exclude_id is not None and reservation.ReservationID == exclude_id:
            continue
        if reservation.Status not in ACTIVE_STATUSES:
            continue
        if ranges_overlap(target, range_of(reservation)):
            overlapping.append(reservation)
    return overlapping


def query_overlapping(
    db: Session,
    target: DateRange,
    equipment_id: int | None = None,
    exclude_id: int | None = None,
) -> list[Reservation]:
    """Load active reservations competing with ``target``.

    Uses the status/date index and, when ``equipment_id`` is given, only
    reservations carrying a line item of that equipment type.
    """
    stmt = (
        select(Reservation)
        .options(selectinload(Reservation.ReservationItems).selectinload(ReservationItem.AssignedAssets))
        .where(Reservation.Status.in_(sorted(ACTIVE_STATUSES)))
        .where(Reservation.StartDate < target.end)
        .where(Reservation.EndDate > target.start)
    )
    if equipment_id is not None:
        stmt = stmt.where(Reservation.ReservationItems.any(ReservationItem.EquipmentID == equipment_id))
    if exclude_id is not None:
        stmt = stmt.where(Reservation.ReservationID != exclude_id)
    candidates = db.execute(stmt).scalars().all()
    return find_overlapping(target, candidates, exclude_id)
