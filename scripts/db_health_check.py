#!/usr/bin/env python
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.services.attendance import attendance_today
from app.services.schema_guard import verify_runtime_schema
from app.settings import get_settings

EXPECTED_HEAD = "0001_initial"
REQUIRED_TABLES = ("employees", "attendance_records", "pending_challenges", "audit_logs")


def run(engine: Engine | None = None, now_utc: datetime | None = None) -> dict[str, Any]:
    if engine is None:
        engine = create_engine(get_settings().database_url)

    report: dict[str, Any] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "database": engine.url.render_as_string(hide_password=True),
        "checks": [],
    }

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    tables = set(inspect(engine).get_table_names())
    missing_tables = [table for table in REQUIRED_TABLES if table not in tables]
    add("required_tables", "fail" if missing_tables else "ok", {"missing": missing_tables})

    guard = verify_runtime_schema(engine, include_challenge_table="pending_challenges" in tables)
    add("schema_guard", "ok" if guard.ok else "fail", guard.to_dict())

    with engine.connect() as conn:
        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        if "attendance_records" in tables:
            duplicate_days = conn.execute(
                text(
                    """
                    select employee_id, work_date, count(*)
                    from attendance_records
                    group by employee_id, work_date
                    having count(*) > 1
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "attendance_duplicate_employee_day",
                "fail" if duplicate_days else "ok",
                {"rows": [[row[0], str(row[1]), row[2]] for row in duplicate_days]},
            )

            orphan_employees = conn.execute(
                text(
                    """
                    select a.id
                    from attendance_records a
                    left join employees e on e.id = a.employee_id
                    where e.id is null
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "attendance_orphan_employee",
                "fail" if orphan_employees else "ok",
                {"sample_ids": [row[0] for row in orphan_employees]},
            )

            open_past_days = conn.execute(
                text(
                    """
                    select count(*)
                    from attendance_records
                    where clock_out_time is null and work_date < :today
                    """
                ),
                {"today": attendance_today(now_utc)},
            ).scalar()
            add(
                "attendance_open_past_days",
                "warn" if open_past_days else "ok",
                {"count": int(open_past_days or 0)},
            )

    report["ok"] = all(item["status"] != "fail" for item in report["checks"])
    return report


if __name__ == "__main__":
    result = run()
    print(json.dumps(result, ensure_ascii=False, indent=2))
    sys.exit(0 if result["ok"] else 1)
