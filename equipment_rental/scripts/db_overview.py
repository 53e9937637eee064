#!/usr/bin/env python3
"""Database overview and integrity checks for the equipment rental store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

import sqlalchemy as sa
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Users",
    "Equipment",
    "Assets",
    "Reservations",
    "ReservationItems",
    "ReservationItemAssets",
    "Repairs",
    "AssetHistory",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Assets": ["AssetID", "EquipmentID", "SerialNumber", "ManagementCode", "Status", "Note"],
    "Reservations": ["ReservationID", "ReservationNumber", "UserID", "Status", "StartDate", "EndDate"],
    "ReservationItems": ["ReservationItemID", "ReservationID", "EquipmentID", "Quantity", "CheckedOut", "Returned"],
    "ReservationItemAssets": ["ReservationItemAssetID", "ReservationItemID", "AssetID"],
    "Repairs": ["RepairID", "AssetID", "Stage", "DamageType", "IsFixed"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}

# Two active reservations with intersecting ranges holding the same unit.
DOUBLE_BOOKING_SQL = """
    SELECT COUNT(*)
    FROM ReservationItemAssets a1
    JOIN ReservationItems i1 ON i1.ReservationItemID = a1.ReservationItemID
    JOIN Reservations r1 ON r1.ReservationID = i1.ReservationID
    JOIN ReservationItemAssets a2 ON a2.AssetID = a1.AssetID
    JOIN ReservationItems i2 ON i2.ReservationItemID = a2.ReservationItemID
    JOIN Reservations r2 ON r2.ReservationID = i2.ReservationID
    WHERE r1.ReservationID < r2.ReservationID
      AND r1.Status IN ('approved', 'rented')
      AND r2.Status IN ('approved', 'rented')
      AND r1.StartDate < r2.EndDate
      AND r1.EndDate > r2.StartDate
"""


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {column["name"] for column in inspect(engine).get_columns(table_name)}


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in EXPECTED_TABLES:
        exists = _table_exists(engine, table)
        results.append(CheckResult(f"table:{table}", exists, "present" if exists else "missing"))
    return results


def run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if not _table_exists(engine, table):
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if _table_exists(engine, "Assets"):
        checks.append(
            _count_check(
                engine,
                "assets:duplicate_serial_number",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT EquipmentID, SerialNumber
                    FROM Assets
                    GROUP BY EquipmentID, SerialNumber
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "assets:orphan_equipmentid",
                """
                SELECT COUNT(*)
                FROM Assets a
                LEFT JOIN Equipment e ON e.EquipmentID = a.EquipmentID
                WHERE e.EquipmentID IS NULL
                """,
            )
        )

    if _table_exists(engine, "ReservationItemAssets") and _table_exists(engine, "Assets"):
        checks.append(
            _count_check(
                engine,
                "reservationitemassets:orphan_assetid",
                """
                SELECT COUNT(*)
                FROM ReservationItemAssets ria
                LEFT JOIN Assets a ON a.AssetID = ria.AssetID
                WHERE a.AssetID IS NULL
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "reservationitemassets:wrong_equipment_type",
                """
                SELECT COUNT(*)
                FROM ReservationItemAssets ria
                JOIN ReservationItems ri ON ri.ReservationItemID = ria.ReservationItemID
                JOIN Assets a ON a.AssetID = ria.AssetID
                WHERE a.EquipmentID <> ri.EquipmentID
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "reservationitemassets:bound_to_released_reservation",
                """
                SELECT COUNT(*)
                FROM ReservationItemAssets ria
                JOIN ReservationItems ri ON ri.ReservationItemID = ria.ReservationItemID
                JOIN Reservations r ON r.ReservationID = ri.ReservationID
                WHERE r.Status IN ('pending', 'rejected', 'cancelled')
                """,
            )
        )
        checks.append(_count_check(engine, "reservations:double_booked_asset", DOUBLE_BOOKING_SQL))

    if _table_exists(engine, "Repairs"):
        checks.append(
            _count_check(
                engine,
                "repairs:multiple_open_per_asset",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT AssetID
                    FROM Repairs
                    WHERE AssetID IS NOT NULL AND Stage <> 'completed'
                    GROUP BY AssetID
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_index_summary(engine: Engine) -> None:
    _print_section("Index Summary (key tables)")
    inspector = inspect(engine)
    for table in ["Assets", "Reservations", "ReservationItems", "ReservationItemAssets", "Repairs"]:
        if not _table_exists(engine, table):
            print(f"{table}: missing")
            continue
        print(f"{table}:")
        for index in inspector.get_indexes(table):
            cols = ",".join(str(col) for col in index["column_names"])
            print(f"  - {index['name']} unique={bool(index['unique'])} cols={cols}")


def recent_rows_statement(table_name: str, columns: Iterable[str], order_column: str, limit: int):
    # .limit() lets each dialect render its own row cap (LIMIT, TOP, FETCH FIRST).
    source = sa.table(table_name, *(sa.column(name) for name in columns))
    return sa.select(source).order_by(sa.desc(source.c[order_column])).limit(max(1, limit))


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    samples = [
        ("Reservations", ["ReservationID", "ReservationNumber", "Status", "StartDate", "EndDate"]),
        ("AuditLogs", ["AuditID", "EntityType", "Action", "UserID", "CreatedAt"]),
    ]
    for table_name, columns in samples:
        if not _table_exists(engine, table_name):
            continue
        with engine.connect() as conn:
            rows = conn.execute(recent_rows_statement(table_name, columns, columns[0], sample_size)).all()
        print(f"{table_name} (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Equipment rental DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_index_summary(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
