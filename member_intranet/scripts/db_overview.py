#!/usr/bin/env python3
"""Database overview and integrity checks for the member intranet content DB."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "InventoryItems",
    "RentalRequests",
    "LegacyRentals",
    "Events",
    "MassMailJobs",
    "MassMailRecipients",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "InventoryItems": ["ItemID", "ExternalID", "Name", "Quantity", "LastSyncedAt"],
    "RentalRequests": [
        "RequestID",
        "ItemID",
        "UserID",
        "Quantity",
        "StartDate",
        "EndDate",
        "Purpose",
        "Status",
        "DecidedBy",
        "ReturnCondition",
        "ConfirmedBy",
    ],
    "LegacyRentals": ["RentalID", "ItemID", "UserID", "Quantity", "Status", "RentedAt", "ReturnedAt"],
    "MassMailJobs": ["JobID", "Subject", "BodyTemplate", "Status", "NextRunAt", "TotalRecipients", "SentCount", "FailedCount"],
    "MassMailRecipients": ["RecipientID", "JobID", "Email", "Status", "ClaimToken", "ClaimedAt", "ProcessedAt"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}


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


def _run_existence_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    return [CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing") for table in EXPECTED_TABLES]


def _run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    inspector = inspect(engine)
    results: list[CheckResult] = []
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

    if {"InventoryItems", "RentalRequests", "LegacyRentals"} <= tables:
        oversold = _rows(
            engine,
            """
            SELECT i.ItemID, i.Quantity, COALESCE(r.qty, 0) + COALESCE(l.qty, 0) AS consumed
            FROM InventoryItems i
            LEFT JOIN (
                SELECT ItemID, SUM(Quantity) AS qty
                FROM RentalRequests
                WHERE Status IN ('approved', 'pending_return')
                GROUP BY ItemID
            ) r ON r.ItemID = i.ItemID
            LEFT JOIN (
                SELECT ItemID, SUM(Quantity) AS qty
                FROM LegacyRentals
                WHERE Status IN ('active', 'pending_return')
                GROUP BY ItemID
            ) l ON l.ItemID = i.ItemID
            WHERE COALESCE(r.qty, 0) + COALESCE(l.qty, 0) > i.Quantity
            """,
        )
        checks.append(
            CheckResult(
                "inventory:consumed_exceeds_total",
                not oversold,
                "count=0" if not oversold else "items=" + ",".join(f"{row[0]}({row[2]}/{row[1]})" for row in oversold),
            )
        )

        unknown_status = _scalar(
            engine,
            """
            SELECT COUNT(*) FROM RentalRequests
            WHERE Status NOT IN ('pending', 'approved', 'pending_return', 'rejected', 'returned')
            """,
        )
        checks.append(
            CheckResult(
                "rentalrequests:unknown_status",
                int(unknown_status or 0) == 0,
                f"count={int(unknown_status or 0)}",
            )
        )

    if {"MassMailJobs", "MassMailRecipients"} <= tables:
        drifted = _rows(
            engine,
            """
            SELECT j.JobID, j.TotalRecipients, j.SentCount, j.FailedCount,
                   (SELECT COUNT(*) FROM MassMailRecipients r WHERE r.JobID = j.JobID AND r.Status = 'pending') AS pending
            FROM MassMailJobs j
            WHERE j.SentCount + j.FailedCount
                  + (SELECT COUNT(*) FROM MassMailRecipients r WHERE r.JobID = j.JobID AND r.Status = 'pending')
                  <> j.TotalRecipients
            """,
        )
        checks.append(
            CheckResult(
                "massmailjobs:counter_drift",
                not drifted,
                "count=0" if not drifted else "jobs=" + ",".join(str(row[0]) for row in drifted),
            )
        )

        completed_with_pending = _scalar(
            engine,
            """
            SELECT COUNT(*) FROM MassMailJobs j
            WHERE j.Status = 'completed'
              AND EXISTS (SELECT 1 FROM MassMailRecipients r WHERE r.JobID = j.JobID AND r.Status = 'pending')
            """,
        )
        checks.append(
            CheckResult(
                "massmailjobs:completed_with_pending",
                int(completed_with_pending or 0) == 0,
                f"count={int(completed_with_pending or 0)}",
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


def _print_open_jobs(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Paused Mail Jobs")
    if "MassMailJobs" not in tables:
        print("MassMailJobs: missing")
        return
    rows = _rows(
        engine,
        """
        SELECT JobID, Subject, NextRunAt, TotalRecipients, SentCount, FailedCount
        FROM MassMailJobs
        WHERE Status = 'paused'
        ORDER BY NextRunAt
        LIMIT :n
        """,
        {"n": max(1, sample_size)},
    )
    if not rows:
        print("none")
    for row in rows:
        print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Member intranet DB overview")
    parser.add_argument("--db-url", default=os.environ.get("CONTENT_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("CONTENT_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
        tables = set(inspect(engine).get_table_names())
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", _run_existence_checks(engine, tables))
    _print_results("Column Checks", _run_column_checks(engine, tables))
    integrity = _run_integrity_checks(engine, tables)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine, tables)
    _print_open_jobs(engine, tables, args.samples)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
