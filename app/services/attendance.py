from __future__ import annotations

import enum
import logging
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.errors import ApiError
from app.models import AttendanceRecord, AttendanceStatus
from app.settings import get_office_start_time, get_settings

logger = logging.getLogger("app.attendance")

DAY_KEY_CONSTRAINT = "uq_attendance_records_employee_day"


class AttendanceState(str, enum.Enum):
    NO_RECORD = "NO_RECORD"
    CLOCKED_IN = "CLOCKED_IN"
    CLOCKED_OUT = "CLOCKED_OUT"


def _normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


@lru_cache
def _attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or "UTC"
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("attendance_timezone_invalid", extra={"attendance_timezone": raw_name})
        return ZoneInfo("UTC")


def _local_day_from_utc(ts_utc: datetime) -> date:
    return _normalize_ts(ts_utc).astimezone(_attendance_timezone()).date()


def attendance_today(now_utc: datetime | None = None) -> date:
    return _local_day_from_utc(_normalize_ts(now_utc))


def resolve_attendance_state(record: AttendanceRecord | None) -> AttendanceState:
    if record is None:
        return AttendanceState.NO_RECORD
    if record.clock_out_time is None:
        return AttendanceState.CLOCKED_IN
    return AttendanceState.CLOCKED_OUT


def is_late_clock_in(clock_in_ts_utc: datetime, office_start: time | None = None) -> bool:
    cutoff = office_start or get_office_start_time()
    local_time = _normalize_ts(clock_in_ts_utc).astimezone(_attendance_timezone())
    # Minute granularity: 09:30:59 against a 09:30 cutoff is on time.
    return (local_time.hour, local_time.minute) > (cutoff.hour, cutoff.minute)


def compute_hours_worked(clock_in_ts_utc: datetime, clock_out_ts_utc: datetime) -> float:
    elapsed_seconds = (_normalize_ts(clock_out_ts_utc) - _normalize_ts(clock_in_ts_utc)).total_seconds()
    hours = Decimal(str(max(0.0, elapsed_seconds))) / Decimal(3600)
    return float(hours.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def get_today_record(
    db: Session,
    *,
    employee_id: int,
    reference_ts_utc: datetime | None = None,
) -> AttendanceRecord | None:
    local_day = _local_day_from_utc(_normalize_ts(reference_ts_utc))
    return db.scalar(
        select(AttendanceRecord).where(
            AttendanceRecord.employee_id == employee_id,
            AttendanceRecord.work_date == local_day,
        )
    )


def ensure_can_clock_in(
    db: Session,
    *,
    employee_id: int,
    reference_ts_utc: datetime | None = None,
) -> None:
    record = get_today_record(db, employee_id=employee_id, reference_ts_utc=reference_ts_utc)
    if record is not None:
        raise ApiError(
            status_code=409,
            code="ALREADY_CLOCKED_IN",
            message="You have already clocked in today.",
        )


def ensure_can_clock_out(
    db: Session,
    *,
    employee_id: int,
    reference_ts_utc: datetime | None = None,
) -> AttendanceRecord:
    record = get_today_record(db, employee_id=employee_id, reference_ts_utc=reference_ts_utc)
    if record is None:
        raise ApiError(
            status_code=409,
            code="NOT_CLOCKED_IN",
            message="You have not clocked in today.",
        )
    if resolve_attendance_state(record) == AttendanceState.CLOCKED_OUT:
        raise _already_clocked_out()
    return record


def _already_clocked_out() -> ApiError:
    return ApiError(
        status_code=409,
        code="ALREADY_CLOCKED_OUT",
        message="You have already clocked out today.",
    )


def _persistence_failed(db: Session, *, event: str, employee_id: int) -> ApiError:
    db.rollback()
    logger.exception(event, extra={"employee_id": employee_id})
    return ApiError(
        status_code=503,
        code="PERSISTENCE_FAILED",
        message="Attendance could not be saved. Please try again.",
    )


def _is_day_key_violation(exc: IntegrityError) -> bool:
    diag = getattr(exc.orig, "diag", None)
    constraint_name = getattr(diag, "constraint_name", None)
    if constraint_name:
        return constraint_name == DAY_KEY_CONSTRAINT
    # SQLite names the columns instead of the constraint.
    message = str(exc.orig)
    return DAY_KEY_CONSTRAINT in message or (
        "UNIQUE constraint failed" in message and "attendance_records.work_date" in message
    )


def open_attendance_record(
    db: Session,
    *,
    employee_id: int,
    clock_in_ts_utc: datetime,
    lat: float,
    lon: float,
) -> AttendanceRecord:
    """NO_RECORD -> CLOCKED_IN.

    The read guard is only a fast path; the unique (employee_id, work_date)
    constraint decides concurrent inserts and the loser gets ALREADY_CLOCKED_IN.
    Any other integrity failure is a persistence error.
    """
    ts_utc = _normalize_ts(clock_in_ts_utc)
    ensure_can_clock_in(db, employee_id=employee_id, reference_ts_utc=ts_utc)

    record = AttendanceRecord(
        employee_id=employee_id,
        work_date=_local_day_from_utc(ts_utc),
        clock_in_time=ts_utc,
        clock_out_time=None,
        is_late=is_late_clock_in(ts_utc),
        status=AttendanceStatus.PRESENT,
        total_hours_worked=None,
        clock_in_lat=lat,
        clock_in_lon=lon,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError as exc:
        if not _is_day_key_violation(exc):
            raise _persistence_failed(db, event="attendance_clock_in_write_failed", employee_id=employee_id) from None
        db.rollback()
        logger.warning(
            "attendance_duplicate_day_rejected",
            extra={"employee_id": employee_id, "work_date": record.work_date.isoformat()},
        )
        raise ApiError(
            status_code=409,
            code="ALREADY_CLOCKED_IN",
            message="You have already clocked in today.",
        ) from None
    except SQLAlchemyError:
        raise _persistence_failed(db, event="attendance_clock_in_write_failed", employee_id=employee_id) from None
    db.refresh(record)
    return record


def close_attendance_record(
    db: Session,
    *,
    employee_id: int,
    clock_out_ts_utc: datetime,
    lat: float,
    lon: float,
) -> AttendanceRecord:
    """CLOCKED_IN -> CLOCKED_OUT, stamping worked hours.

    The write only matches a record that is still open, so of two overlapping
    clock-outs exactly one lands and the other gets ALREADY_CLOCKED_OUT.
    """
    ts_utc = _normalize_ts(clock_out_ts_utc)
    record = ensure_can_clock_out(db, employee_id=employee_id, reference_ts_utc=ts_utc)

    stmt = (
        update(AttendanceRecord)
        .where(
            AttendanceRecord.id == record.id,
            AttendanceRecord.clock_out_time.is_(None),
        )
        .values(
            clock_out_time=ts_utc,
            total_hours_worked=compute_hours_worked(record.clock_in_time, ts_utc),
            clock_out_lat=lat,
            clock_out_lon=lon,
        )
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        if result.rowcount == 0:
            db.rollback()
            logger.warning(
                "attendance_duplicate_clock_out_rejected",
                extra={"employee_id": employee_id, "record_id": record.id},
            )
            raise _already_clocked_out()
        db.commit()
    except SQLAlchemyError:
        raise _persistence_failed(db, event="attendance_clock_out_write_failed", employee_id=employee_id) from None
    db.refresh(record)
    return record


def validate_date_range(start_date: date | None, end_date: date | None) -> None:
    if (start_date is None) != (end_date is None):
        raise ApiError(
            status_code=422,
            code="VALIDATION_ERROR",
            message="start_date and end_date must be provided together.",
        )
    if start_date is not None and end_date is not None and start_date > end_date:
        raise ApiError(
            status_code=422,
            code="VALIDATION_ERROR",
            message="start_date must be on or before end_date.",
        )


def list_attendance_records(
    db: Session,
    *,
    employee_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    on_date: date | None = None,
    limit: int | None = None,
) -> list[AttendanceRecord]:
    stmt = select(AttendanceRecord).options(selectinload(AttendanceRecord.employee))
    if employee_id is not None:
        stmt = stmt.where(AttendanceRecord.employee_id == employee_id)
    if start_date is not None and end_date is not None:
        stmt = stmt.where(
            AttendanceRecord.work_date >= start_date,
            AttendanceRecord.work_date <= end_date,
        )
    elif on_date is not None:
        stmt = stmt.where(AttendanceRecord.work_date == on_date)
    stmt = stmt.order_by(AttendanceRecord.work_date.desc(), AttendanceRecord.clock_in_time.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt).all())
