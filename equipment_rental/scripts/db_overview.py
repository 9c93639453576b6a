#!/usr/bin/env python3
"""Database overview and integrity checks for the rental desk."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


EXPECTED_TABLES = [
    "Customers",
    "Equipment",
    "Rentals",
    "RentalItems",
    "RentalPayments",
    "Users",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Equipment": ["EquipmentID", "Name", "Category", "RatePerDay", "TotalManaged", "OnRent", "OnMaintenance", "Version"],
    "Rentals": [
        "RentalID",
        "CustomerID",
        "CustomerName",
        "StartDate",
        "EndDate",
        "Status",
        "AdvancePayment",
        "TotalPaidAmount",
        "TotalCalculatedAmount",
        "Version",
    ],
    "RentalItems": ["RentalItemID", "RentalID", "EquipmentID", "EquipmentName", "Quantity", "RatePerDay"],
    "RentalPayments": ["PaymentID", "RentalID", "Amount", "PaymentDate", "Notes", "Kind"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
    "Users": ["UserID", "Email", "DisplayName", "PasswordHash", "PasswordSalt", "Role", "IsActive"],
}

# Rentals whose stored paid amount disagrees with the advance plus the ledger.
LEDGER_DRIFT_SQL = """
    SELECT COUNT(*)
    FROM Rentals r
    LEFT JOIN (
        SELECT RentalID,
               SUM(Amount) AS LedgerTotal,
               SUM(CASE WHEN Kind = 'Advance' THEN 1 ELSE 0 END) AS AdvanceRows
        FROM RentalPayments
        GROUP BY RentalID
    ) p ON p.RentalID = r.RentalID
    WHERE ABS(
        r.TotalPaidAmount
        - COALESCE(p.LedgerTotal, 0)
        - CASE WHEN COALESCE(p.AdvanceRows, 0) = 0 THEN r.AdvancePayment ELSE 0 END
    ) > 0.01
"""

ON_RENT_DRIFT_SQL = """
    SELECT COUNT(*)
    FROM Equipment e
    LEFT JOIN (
        SELECT ri.EquipmentID, SUM(ri.Quantity) AS Qty
        FROM RentalItems ri
        JOIN Rentals r ON r.RentalID = ri.RentalID
        WHERE r.Status = 'Active'
        GROUP BY ri.EquipmentID
    ) a ON a.EquipmentID = e.EquipmentID
    WHERE e.OnRent <> COALESCE(a.Qty, 0)
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


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


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


def _run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if "Equipment" in tables:
        checks.append(
            _count_check(
                engine,
                "equipment:overcommitted",
                "SELECT COUNT(*) FROM Equipment WHERE OnRent + OnMaintenance > TotalManaged",
            )
        )
        checks.append(
            _count_check(
                engine,
                "equipment:negative_counts",
                "SELECT COUNT(*) FROM Equipment WHERE OnRent < 0 OR OnMaintenance < 0 OR TotalManaged < 0",
            )
        )

    if {"Equipment", "RentalItems", "Rentals"} <= tables:
        checks.append(_count_check(engine, "equipment:on_rent_drift", ON_RENT_DRIFT_SQL))
        checks.append(
            _count_check(
                engine,
                "rentalitems:orphan_equipmentid",
                """
                SELECT COUNT(*)
                FROM RentalItems ri
                LEFT JOIN Equipment e ON e.EquipmentID = ri.EquipmentID
                WHERE e.EquipmentID IS NULL
                """,
            )
        )

    if {"Rentals", "RentalPayments"} <= tables:
        checks.append(_count_check(engine, "rentals:ledger_drift", LEDGER_DRIFT_SQL))

    if "Rentals" in tables:
        checks.append(
            _count_check(
                engine,
                "rentals:open_with_end_date",
                "SELECT COUNT(*) FROM Rentals WHERE Status = 'Active' AND EndDate IS NOT NULL",
            )
        )
        checks.append(
            _count_check(
                engine,
                "rentals:closed_with_balance",
                "SELECT COUNT(*) FROM Rentals WHERE Status = 'Closed' AND TotalCalculatedAmount - TotalPaidAmount > 0.01",
            )
        )
        checks.append(
            _count_check(
                engine,
                "rentals:payment_due_without_balance",
                "SELECT COUNT(*) FROM Rentals WHERE Status = 'Payment Due' AND TotalCalculatedAmount - TotalPaidAmount <= 0.01",
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


def _print_samples(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "Rentals" in tables:
        rows = _rows(
            engine,
            """
            SELECT RentalID, CustomerName, StartDate, EndDate, Status, TotalCalculatedAmount, TotalPaidAmount
            FROM Rentals
            ORDER BY RentalID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("Rentals (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "AuditLogs" in tables:
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, Action, UserID, CreatedAt
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
    parser = argparse.ArgumentParser(description="Rental desk DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
        tables = set(inspect(engine).get_table_names())
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", _run_existence_checks(tables))
    _print_results("Column Checks", _run_column_checks(engine, tables))
    integrity = _run_integrity_checks(engine, tables)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine, tables)
    _print_samples(engine, tables, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
