from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.audit import audit_request
from app.db import get_db
from app.errors import ApiError
from app.models import AuditActorType
from app.schemas import (
    AttendanceRecordRead,
    ChallengeIssuedResponse,
    ClockActionLocationRequest,
    ClockInVerifyRequest,
    ClockInVerifyResponse,
    ClockOutVerifyRequest,
    ClockOutVerifyResponse,
    TodayAttendanceResponse,
)
from app.security import EmployeeIdentity, require_employee
from app.services.attendance import (
    get_today_record,
    list_attendance_records,
    resolve_attendance_state,
    validate_date_range,
)
from app.services.challenges import ChallengeStore, get_challenge_store
from app.services.clock_actions import (
    ChallengeIssued,
    initiate_clock_in,
    initiate_clock_out,
    verify_clock_in,
    verify_clock_out,
)
from app.services.mail import MailSender, get_mail_sender

router = APIRouter(tags=["attendance"])


def _audit_rejection(
    db: Session,
    request: Request,
    identity: EmployeeIdentity,
    *,
    action: str,
    exc: ApiError,
) -> None:
    audit_request(
        db,
        request,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(identity.employee_id),
        action=action,
        success=False,
        entity_type="employee",
        entity_id=str(identity.employee_id),
        details={"error_code": exc.code, **(exc.details or {})},
    )


def _issued_response(issued: ChallengeIssued, *, message: str) -> ChallengeIssuedResponse:
    return ChallengeIssuedResponse(
        ok=True,
        message=message,
        expires_at=issued.expires_at,
        expires_in_seconds=issued.expires_in_seconds(datetime.now(timezone.utc)),
    )


@router.post("/api/attendance/clock-in/initiate", response_model=ChallengeIssuedResponse)
def clock_in_initiate(
    payload: ClockActionLocationRequest,
    request: Request,
    identity: EmployeeIdentity = Depends(require_employee),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
    mail_sender: MailSender = Depends(get_mail_sender),
) -> ChallengeIssuedResponse:
    try:
        issued = initiate_clock_in(
            db,
            identity=identity,
            lat=payload.latitude,
            lon=payload.longitude,
            store=store,
            mail_sender=mail_sender,
        )
    except ApiError as exc:
        _audit_rejection(db, request, identity, action="ATTENDANCE_CLOCK_IN_OTP_ISSUED", exc=exc)
        raise

    audit_request(
        db,
        request,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(identity.employee_id),
        action="ATTENDANCE_CLOCK_IN_OTP_ISSUED",
        entity_type="employee",
        entity_id=str(identity.employee_id),
        details={"expires_at": issued.expires_at.isoformat()},
    )
    return _issued_response(issued, message="OTP sent to your email. Please verify to clock in.")


@router.post("/api/attendance/clock-in/verify", response_model=ClockInVerifyResponse)
def clock_in_verify(
    payload: ClockInVerifyRequest,
    request: Request,
    identity: EmployeeIdentity = Depends(require_employee),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
) -> ClockInVerifyResponse:
    try:
        result = verify_clock_in(
            db,
            identity=identity,
            code=payload.code,
            lat=payload.latitude,
            lon=payload.longitude,
            store=store,
        )
    except ApiError as exc:
        _audit_rejection(db, request, identity, action="ATTENDANCE_CLOCK_IN", exc=exc)
        raise

    request.state.record_id = result.record.id
    audit_request(
        db,
        request,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(identity.employee_id),
        action="ATTENDANCE_CLOCK_IN",
        entity_type="attendance_record",
        entity_id=str(result.record.id),
        details={
            "work_date": result.record.work_date.isoformat(),
            "is_late": result.is_late,
        },
    )
    return ClockInVerifyResponse(
        ok=True,
        message="Clock-in successful.",
        is_late=result.is_late,
        record=AttendanceRecordRead.model_validate(result.record),
    )


@router.post("/api/attendance/clock-out/initiate", response_model=ChallengeIssuedResponse)
def clock_out_initiate(
    payload: ClockActionLocationRequest,
    request: Request,
    identity: EmployeeIdentity = Depends(require_employee),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
    mail_sender: MailSender = Depends(get_mail_sender),
) -> ChallengeIssuedResponse:
    try:
        issued = initiate_clock_out(
            db,
            identity=identity,
            lat=payload.latitude,
            lon=payload.longitude,
            store=store,
            mail_sender=mail_sender,
        )
    except ApiError as exc:
        _audit_rejection(db, request, identity, action="ATTENDANCE_CLOCK_OUT_OTP_ISSUED", exc=exc)
        raise

    audit_request(
        db,
        request,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(identity.employee_id),
        action="ATTENDANCE_CLOCK_OUT_OTP_ISSUED",
        entity_type="employee",
        entity_id=str(identity.employee_id),
        details={"expires_at": issued.expires_at.isoformat()},
    )
    return _issued_response(issued, message="OTP sent to your email. Please verify to clock out.")


@router.post("/api/attendance/clock-out/verify", response_model=ClockOutVerifyResponse)
def clock_out_verify(
    payload: ClockOutVerifyRequest,
    request: Request,
    identity: EmployeeIdentity = Depends(require_employee),
    db: Session = Depends(get_db),
    store: ChallengeStore = Depends(get_challenge_store),
) -> ClockOutVerifyResponse:
    try:
        result = verify_clock_out(
            db,
            identity=identity,
            code=payload.code,
            store=store,
        )
    except ApiError as exc:
        _audit_rejection(db, request, identity, action="ATTENDANCE_CLOCK_OUT", exc=exc)
        raise

    request.state.record_id = result.record.id
    audit_request(
        db,
        request,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(identity.employee_id),
        action="ATTENDANCE_CLOCK_OUT",
        entity_type="attendance_record",
        entity_id=str(result.record.id),
        details={
            "work_date": result.record.work_date.isoformat(),
            "total_hours_worked": result.total_hours_worked,
        },
    )
    return ClockOutVerifyResponse(
        ok=True,
        message="Clock-out successful.",
        total_hours_worked=result.total_hours_worked,
        record=AttendanceRecordRead.model_validate(result.record),
    )


@router.get("/api/attendance/today", response_model=TodayAttendanceResponse)
def attendance_today(
    identity: EmployeeIdentity = Depends(require_employee),
    db: Session = Depends(get_db),
) -> TodayAttendanceResponse:
    record = get_today_record(db, employee_id=identity.employee_id)
    return TodayAttendanceResponse(
        state=resolve_attendance_state(record),
        record=AttendanceRecordRead.model_validate(record) if record is not None else None,
    )


@router.get("/api/attendance/me", response_model=list[AttendanceRecordRead])
def attendance_history(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    on_date: date | None = Query(default=None, alias="date"),
    identity: EmployeeIdentity = Depends(require_employee),
    db: Session = Depends(get_db),
) -> list[AttendanceRecordRead]:
    validate_date_range(start_date, end_date)
    records = list_attendance_records(
        db,
        employee_id=identity.employee_id,
        start_date=start_date,
        end_date=end_date,
        on_date=on_date,
    )
    return [AttendanceRecordRead.model_validate(item) for item in records]
