#!/usr/bin/env python3
"""Database overview and integrity checks for the rental escrow store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Equipment",
    "EquipmentRateOverrides",
    "BookingRequests",
    "Inspections",
    "InspectionChecklistItems",
    "EscrowPayments",
    "DamageClaims",
    "AuditLogs",
    "NotificationQueue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "BookingRequests": [
        "BookingID",
        "EquipmentID",
        "RenterID",
        "OwnerID",
        "StartDate",
        "EndDate",
        "Status",
        "TotalAmount",
        "Version",
    ],
    "EscrowPayments": [
        "PaymentID",
        "BookingID",
        "TotalAmount",
        "DepositAmount",
        "PaymentStatus",
        "EscrowStatus",
        "OwnerPayout",
        "DepositReturned",
        "PlatformRetained",
    ],
    "Inspections": ["InspectionID", "BookingID", "InspectionType", "Photos", "SubmittedBy", "Timestamp"],
    "DamageClaims": ["ClaimID", "BookingID", "EstimatedCost", "Status", "AgreedCost"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}

# Non-terminal statuses that must keep their escrow held.
HELD_STATUSES = (
    "approved",
    "awaiting_pickup_inspection",
    "active",
    "awaiting_return_inspection",
    "pending_owner_review",
    "disputed",
)


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


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _run_existence_checks(tables: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    results: list[CheckResult] = []
    inspector = inspect(engine)
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str, params: dict | None = None) -> CheckResult:
    count = int(_scalar(engine, sql, params) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if {"BookingRequests", "EscrowPayments"} <= tables:
        checks.append(
            _count_check(
                engine,
                "bookings:missing_payment_record",
                """
                SELECT COUNT(*)
                FROM BookingRequests b
                LEFT JOIN EscrowPayments p ON p.BookingID = b.BookingID
                WHERE p.PaymentID IS NULL
                """,
            )
        )
        placeholders = ", ".join(f":s{i}" for i in range(len(HELD_STATUSES)))
        checks.append(
            _count_check(
                engine,
                "bookings:active_without_held_escrow",
                f"""
                SELECT COUNT(*)
                FROM BookingRequests b
                JOIN EscrowPayments p ON p.BookingID = b.BookingID
                WHERE b.Status IN ({placeholders})
                  AND (p.EscrowStatus IS NULL OR p.EscrowStatus <> 'held')
                """,
                {f"s{i}": status for i, status in enumerate(HELD_STATUSES)},
            )
        )
        checks.append(
            _count_check(
                engine,
                "escrow:released_amounts_do_not_add_up",
                """
                SELECT COUNT(*)
                FROM EscrowPayments
                WHERE EscrowStatus IN ('released_to_owner', 'split')
                  AND ABS(TotalAmount - OwnerPayout - DepositReturned - PlatformRetained) > 0.001
                """,
            )
        )

    if {"BookingRequests", "Equipment"} <= tables:
        checks.append(
            _count_check(
                engine,
                "bookings:orphan_equipmentid",
                """
                SELECT COUNT(*)
                FROM BookingRequests b
                LEFT JOIN Equipment e ON e.EquipmentID = b.EquipmentID
                WHERE e.EquipmentID IS NULL
                """,
            )
        )

    if "Inspections" in tables:
        checks.append(
            _count_check(
                engine,
                "inspections:duplicate_type_per_booking",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT BookingID, InspectionType
                    FROM Inspections
                    GROUP BY BookingID, InspectionType
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


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_status_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Bookings by Status")
    if "BookingRequests" not in tables:
        print("BookingRequests: missing")
        return
    for status, count in _rows(engine, "SELECT Status, COUNT(*) FROM BookingRequests GROUP BY Status ORDER BY Status"):
        print(f"{status}: {int(count or 0)}")


def _print_samples(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "BookingRequests" in tables:
        rows = _rows(
            engine,
            """
            SELECT BookingID, EquipmentID, StartDate, EndDate, Status, Version
            FROM BookingRequests
            ORDER BY BookingID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("BookingRequests (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "AuditLogs" in tables:
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, EntityID, Action, UserID, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Rental escrow DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_ESCROW_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_ESCROW_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    tables = set(inspect(engine).get_table_names())
    _print_results("Table Existence", _run_existence_checks(tables))
    _print_results("Column Checks", _run_column_checks(engine, tables))
    _print_results("Integrity Checks", _run_integrity_checks(engine, tables))
    _print_row_counts(engine, tables)
    _print_status_counts(engine, tables)
    _print_samples(engine, tables, args.samples)
    return 0


if __name__ == "__main__":
    sys.exit(main())
