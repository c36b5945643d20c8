from __future__ import annotations

import os
import unittest
from datetime import date, datetime, timezone
from unittest.mock import patch

from app.models import AttendanceRecord, AttendanceStatus
from app.services.attendance import _attendance_timezone
from app.services.schema_guard import verify_runtime_schema
from app.settings import get_settings
from scripts.db_health_check import run as run_db_health_check
from tests.support import add_employee, make_session_factory, make_sqlite_engine


class _FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar(self):  # type: ignore[no-untyped-def]
        return self._value


class _FakeConnection:
    def __init__(self, version_value):
        self._version_value = version_value

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult(self._version_value)


class _FakeEngine:
    def __init__(self, version_value):
        self._version_value = version_value

    def connect(self):  # type: ignore[no-untyped-def]
        return _FakeConnection(self._version_value)


class _FakeInspector:
    def __init__(
        self,
        *,
        columns_by_table: dict[str, set[str]],
        unique_constraints: dict[str, list[list[str]]],
        unique_indexes: dict[str, list[list[str]]] | None = None,
        enums: list[dict[str, object]],
    ):
        self._columns_by_table = columns_by_table
        self._unique_constraints = unique_constraints
        self._unique_indexes = unique_indexes or {}
        self._enums = enums

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        columns = self._columns_by_table[table_name]
        return [{"name": item} for item in columns]

    def get_unique_constraints(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"column_names": item} for item in self._unique_constraints.get(table_name, [])]

    def get_indexes(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"column_names": item, "unique": True} for item in self._unique_indexes.get(table_name, [])]

    def get_enums(self):  # type: ignore[no-untyped-def]
        return self._enums


_HEALTHY_COLUMNS = {
    "employees": {"id", "employee_no", "first_name", "last_name", "email"},
    "attendance_records": {
        "id",
        "employee_id",
        "work_date",
        "clock_in_time",
        "clock_out_time",
        "is_late",
        "status",
        "total_hours_worked",
        "clock_in_lat",
        "clock_in_lon",
        "clock_out_lat",
        "clock_out_lon",
    },
    "audit_logs": {"id", "action", "details"},
    "pending_challenges": {"kind", "identity", "code_digest", "expires_at", "attempts", "context"},
    "alembic_version": {"version_num"},
}


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table=_HEALTHY_COLUMNS,
            unique_constraints={"attendance_records": [["employee_id", "work_date"]]},
            enums=[{"name": "attendance_status", "labels": ["present", "absent"]}],
        )
        fake_engine = _FakeEngine("0001_initial")

        with patch("app.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine, include_challenge_table=True)  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_unique_index_satisfies_day_key(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table=_HEALTHY_COLUMNS,
            unique_constraints={},
            unique_indexes={"attendance_records": [["employee_id", "work_date"]]},
            enums=[{"name": "attendance_status", "labels": ["present", "absent"]}],
        )

        with patch("app.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(_FakeEngine("0001_initial"))  # type: ignore[arg-type]

        self.assertTrue(result.ok)

    def test_verify_runtime_schema_reports_missing_columns(self) -> None:
        fake_inspector = _FakeInspector(
            columns_by_table={
                "employees": {"id", "email"},
                "attendance_records": {"id", "employee_id", "work_date"},
                "audit_logs": {"id", "action", "details"},
                "pending_challenges": {"kind", "identity"},
                "alembic_version": {"version_num"},
            },
            unique_constraints={"attendance_records": [["employee_id"]]},
            enums=[{"name": "attendance_status", "labels": ["present"]}],
        )
        fake_engine = _FakeEngine("")

        with patch("app.services.schema_guard.inspect", return_value=fake_inspector):
            result = verify_runtime_schema(fake_engine, include_challenge_table=True)  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertTrue(any(item.startswith("MISSING_COLUMNS:employees:employee_no") for item in result.issues))
        self.assertTrue(any(item.startswith("MISSING_COLUMNS:attendance_records:") for item in result.issues))
        self.assertTrue(any(item.startswith("MISSING_COLUMNS:pending_challenges:") for item in result.issues))
        self.assertIn("MISSING_UNIQUE_KEY:attendance_records:employee_id,work_date", result.issues)
        self.assertIn("MISSING_ENUM_VALUES:attendance_status:absent", result.issues)
        self.assertIn("ALEMBIC_VERSION_EMPTY", result.issues)

    def test_sqlite_metadata_passes_except_for_alembic_stamp(self) -> None:
        engine = make_sqlite_engine()
        try:
            result = verify_runtime_schema(engine, include_challenge_table=True)
        finally:
            engine.dispose()

        self.assertTrue(result.issues)
        self.assertTrue(all("alembic_version" in item or item.startswith("ALEMBIC_") for item in result.issues))
        self.assertFalse(any(item.startswith("MISSING_UNIQUE_KEY") for item in result.issues))


class DbHealthCheckTests(unittest.TestCase):
    def test_report_on_fresh_schema(self) -> None:
        engine = make_sqlite_engine()
        try:
            report = run_db_health_check(engine)
        finally:
            engine.dispose()

        checks = {item["name"]: item for item in report["checks"]}
        self.assertEqual(checks["required_tables"]["status"], "ok")
        self.assertEqual(checks["attendance_duplicate_employee_day"]["status"], "ok")
        self.assertEqual(checks["attendance_orphan_employee"]["status"], "ok")
        self.assertEqual(checks["migration_up_to_date"]["status"], "warn")
        self.assertEqual(checks["schema_guard"]["status"], "fail")
        self.assertFalse(report["ok"])

    def test_open_record_on_the_local_day_is_not_stale(self) -> None:
        env = {"ATTENDANCE_TIMEZONE": "America/Los_Angeles"}
        engine = make_sqlite_engine()
        with patch.dict(os.environ, env, clear=False):
            get_settings.cache_clear()
            _attendance_timezone.cache_clear()
            try:
                session = make_session_factory(engine)()
                employee = add_employee(session)
                session.add(
                    AttendanceRecord(
                        employee_id=employee.id,
                        work_date=date(2026, 3, 1),
                        clock_in_time=datetime(2026, 3, 1, 17, 0, tzinfo=timezone.utc),
                        is_late=False,
                        status=AttendanceStatus.PRESENT,
                        clock_in_lat=40.7129,
                        clock_in_lon=-74.0060,
                    )
                )
                session.commit()
                session.close()

                # 03:00 UTC on March 2nd is still March 1st in Los Angeles.
                report = run_db_health_check(engine, now_utc=datetime(2026, 3, 2, 3, 0, tzinfo=timezone.utc))
                later = run_db_health_check(engine, now_utc=datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))
            finally:
                engine.dispose()
                get_settings.cache_clear()
                _attendance_timezone.cache_clear()

        checks = {item["name"]: item for item in report["checks"]}
        self.assertEqual(checks["attendance_open_past_days"]["status"], "ok")
        later_checks = {item["name"]: item for item in later["checks"]}
        self.assertEqual(later_checks["attendance_open_past_days"]["status"], "warn")
        self.assertEqual(later_checks["attendance_open_past_days"]["details"]["count"], 1)


if __name__ == "__main__":
    unittest.main()
