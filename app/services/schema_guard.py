from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "employees": {"id", "employee_no", "first_name", "email"},
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
    "alembic_version": {"version_num"},
}

# The pending_challenges table only matters when the database store is selected.
OPTIONAL_TABLE_COLUMNS: dict[str, set[str]] = {
    "pending_challenges": {"kind", "identity", "code_digest", "expires_at", "attempts", "context"},
}

REQUIRED_UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    "attendance_records": ("employee_id", "work_date"),
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "attendance_status": {"present", "absent"},
}


def _check_columns(inspector: Any, table_name: str, required_columns: set[str]) -> str | None:
    try:
        column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
    except SQLAlchemyError as exc:
        return f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}"

    missing_columns = sorted(item for item in required_columns if item not in column_names)
    if missing_columns:
        return f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}"
    return None


def _unique_keys(inspector: Any, table_name: str) -> set[tuple[str, ...]]:
    keys: set[tuple[str, ...]] = set()
    for constraint in inspector.get_unique_constraints(table_name) or []:
        keys.add(tuple(str(item) for item in constraint.get("column_names") or []))
    for index in inspector.get_indexes(table_name) or []:
        if index.get("unique"):
            keys.add(tuple(str(item) for item in index.get("column_names") or []))
    return keys


def verify_runtime_schema(engine: Engine, *, include_challenge_table: bool = False) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    tables = dict(REQUIRED_TABLE_COLUMNS)
    if include_challenge_table:
        tables.update(OPTIONAL_TABLE_COLUMNS)

    for table_name, required_columns in tables.items():
        issue = _check_columns(inspector, table_name, required_columns)
        if issue is not None:
            issues.append(issue)

    # A missing day key means concurrent clock-ins could both land.
    for table_name, key_columns in REQUIRED_UNIQUE_KEYS.items():
        try:
            present_keys = _unique_keys(inspector, table_name)
        except SQLAlchemyError as exc:
            issues.append(f"UNIQUE_KEY_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        if key_columns not in present_keys:
            issues.append(f"MISSING_UNIQUE_KEY:{table_name}:{','.join(key_columns)}")

    # Only the PostgreSQL inspector exposes native enums.
    get_enums = getattr(inspector, "get_enums", None)
    enums: list[dict[str, Any]] = []
    if get_enums is None:
        warnings.append("ENUM_INSPECTION_UNSUPPORTED")
    else:
        try:
            enums = get_enums() or []
        except (SQLAlchemyError, NotImplementedError) as exc:
            warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")

    enum_values_by_name: dict[str, set[str]] = {}
    for enum_item in enums:
        name = str(enum_item.get("name") or "").strip()
        if not name:
            continue
        labels = enum_item.get("labels")
        if isinstance(labels, list):
            enum_values_by_name[name] = {str(label) for label in labels}

    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if enum_name not in enum_values_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(item for item in required_values if item not in enum_values_by_name[enum_name])
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")

    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
            version = str(row).strip() if row is not None else ""
            if not version:
                issues.append("ALEMBIC_VERSION_EMPTY")
    except SQLAlchemyError as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
