"""Two-phase, OTP-gated clock-in and clock-out.

initiate: validate location and geofence, check the day's state, issue a code
and mail it. verify: check the code against the pending challenge and drive
the attendance record transition.

Challenge policy:
- re-initiating replaces any live challenge of the same kind;
- a challenge whose mail could not be delivered is withdrawn at once;
- expiry, guard violations and success consume the challenge; a wrong code
  only counts an attempt until ``otp_max_attempts`` burns it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.errors import ApiError
from app.models import AttendanceRecord
from app.security import EmployeeIdentity
from app.services.attendance import (
    _normalize_ts,
    close_attendance_record,
    ensure_can_clock_in,
    ensure_can_clock_out,
    open_attendance_record,
)
from app.services.challenges import ChallengeKind, ChallengeStore, PendingChallenge
from app.services.location import evaluate_geofence, get_office_geofence
from app.services.mail import MailDeliveryError, MailSender, build_code_message
from app.services.otp import code_matches, generate_otp_code
from app.settings import get_settings

logger = logging.getLogger("app.clock_actions")


@dataclass(frozen=True, slots=True)
class ChallengeIssued:
    kind: ChallengeKind
    expires_at: datetime

    def expires_in_seconds(self, now_utc: datetime | None = None) -> int:
        return max(0, int((self.expires_at - _normalize_ts(now_utc)).total_seconds()))


@dataclass(frozen=True, slots=True)
class ClockInResult:
    record: AttendanceRecord
    is_late: bool


@dataclass(frozen=True, slots=True)
class ClockOutResult:
    record: AttendanceRecord
    total_hours_worked: float


def _otp_ttl() -> timedelta:
    return timedelta(minutes=max(1, int(get_settings().otp_ttl_minutes)))


def _require_location(lat: float | None, lon: float | None) -> tuple[float, float]:
    if lat is None or lon is None:
        raise ApiError(
            status_code=400,
            code="LOCATION_REQUIRED",
            message="Location data is required.",
        )
    lat_value, lon_value = float(lat), float(lon)
    if not (-90.0 <= lat_value <= 90.0 and -180.0 <= lon_value <= 180.0):
        raise ApiError(
            status_code=422,
            code="VALIDATION_ERROR",
            message="Latitude must be within [-90, 90] and longitude within [-180, 180].",
            details={"latitude": lat_value, "longitude": lon_value},
        )
    return lat_value, lon_value


def _require_code(code: str | None) -> str:
    normalized = (code or "").strip()
    if not normalized:
        raise ApiError(
            status_code=400,
            code="CODE_REQUIRED",
            message="OTP is required.",
        )
    return normalized


def _ensure_within_geofence(identity: EmployeeIdentity, lat: float, lon: float, *, action: str) -> None:
    check = evaluate_geofence(get_office_geofence(), lat, lon)
    if check.within:
        return
    logger.info(
        "geofence_rejected",
        extra={"employee_id": identity.employee_id, "action": action, **check.to_flags()},
    )
    raise ApiError(
        status_code=403,
        code="OUT_OF_RANGE",
        message=f"You're not within allowed {action} range.",
        details=check.to_flags(),
    )


def _issue_and_dispatch(
    store: ChallengeStore,
    mail_sender: MailSender,
    *,
    kind: ChallengeKind,
    identity: EmployeeIdentity,
    action: str,
    context: dict[str, float],
    now_utc: datetime,
) -> ChallengeIssued:
    ttl = _otp_ttl()
    code = generate_otp_code()
    challenge = store.issue(kind, identity.challenge_key, code, ttl, context, now_utc=now_utc)
    message = build_code_message(
        to=identity.email,
        first_name=identity.first_name,
        code=code,
        action=action,
        ttl_minutes=int(ttl.total_seconds() // 60),
    )
    try:
        mail_sender.send(message)
    except MailDeliveryError as exc:
        store.consume(kind, identity.challenge_key)
        logger.error(
            "otp_mail_failed",
            extra={
                "employee_id": identity.employee_id,
                "kind": kind.value,
                "reason": str(exc),
            },
        )
        raise ApiError(
            status_code=502,
            code="MAIL_FAILED",
            message="Failed to send OTP email. Please try again.",
        ) from exc

    logger.info(
        "otp_challenge_issued",
        extra={
            "employee_id": identity.employee_id,
            "kind": kind.value,
            "expires_at": challenge.expires_at.isoformat(),
        },
    )
    return ChallengeIssued(kind=kind, expires_at=challenge.expires_at)


def _load_verified_challenge(
    store: ChallengeStore,
    *,
    kind: ChallengeKind,
    identity: EmployeeIdentity,
    code: str,
    now_utc: datetime,
) -> PendingChallenge:
    key = identity.challenge_key
    action = "clock-in" if kind == ChallengeKind.CLOCK_IN else "clock-out"
    challenge = store.lookup(kind, key)
    if challenge is None:
        raise ApiError(
            status_code=404,
            code="NO_CHALLENGE",
            message=f"No OTP found. Please initiate {action} first.",
        )

    if challenge.is_expired(now_utc):
        store.consume(kind, key)
        raise ApiError(
            status_code=410,
            code="EXPIRED",
            message="OTP has expired. Please request a new one.",
        )

    if not code_matches(code, challenge.code_digest):
        max_attempts = max(1, int(get_settings().otp_max_attempts))
        attempts = store.record_failed_attempt(kind, key)
        attempts_left = max(0, max_attempts - attempts)
        if attempts_left == 0:
            store.consume(kind, key)
        logger.info(
            "otp_mismatch",
            extra={
                "employee_id": identity.employee_id,
                "kind": kind.value,
                "attempts": attempts,
                "attempts_left": attempts_left,
            },
        )
        raise ApiError(
            status_code=400,
            code="MISMATCH",
            message="Invalid OTP.",
            details={"attempts_left": attempts_left},
        )

    return challenge


def initiate_clock_in(
    db: Session,
    *,
    identity: EmployeeIdentity,
    lat: float | None,
    lon: float | None,
    store: ChallengeStore,
    mail_sender: MailSender,
    now_utc: datetime | None = None,
) -> ChallengeIssued:
    now = _normalize_ts(now_utc)
    lat_value, lon_value = _require_location(lat, lon)
    _ensure_within_geofence(identity, lat_value, lon_value, action="clock-in")
    ensure_can_clock_in(db, employee_id=identity.employee_id, reference_ts_utc=now)

    return _issue_and_dispatch(
        store,
        mail_sender,
        kind=ChallengeKind.CLOCK_IN,
        identity=identity,
        action="clock in",
        context={"latitude": lat_value, "longitude": lon_value},
        now_utc=now,
    )


def verify_clock_in(
    db: Session,
    *,
    identity: EmployeeIdentity,
    code: str | None,
    lat: float | None,
    lon: float | None,
    store: ChallengeStore,
    now_utc: datetime | None = None,
) -> ClockInResult:
    now = _normalize_ts(now_utc)
    normalized_code = _require_code(code)
    lat_value, lon_value = _require_location(lat, lon)
    _load_verified_challenge(
        store,
        kind=ChallengeKind.CLOCK_IN,
        identity=identity,
        code=normalized_code,
        now_utc=now,
    )

    try:
        record = open_attendance_record(
            db,
            employee_id=identity.employee_id,
            clock_in_ts_utc=now,
            lat=lat_value,
            lon=lon_value,
        )
    except ApiError as exc:
        if exc.code == "ALREADY_CLOCKED_IN":
            store.consume(ChallengeKind.CLOCK_IN, identity.challenge_key)
        raise

    store.consume(ChallengeKind.CLOCK_IN, identity.challenge_key)
    logger.info(
        "clock_in_committed",
        extra={
            "employee_id": identity.employee_id,
            "record_id": record.id,
            "is_late": record.is_late,
        },
    )
    return ClockInResult(record=record, is_late=record.is_late)


def initiate_clock_out(
    db: Session,
    *,
    identity: EmployeeIdentity,
    lat: float | None,
    lon: float | None,
    store: ChallengeStore,
    mail_sender: MailSender,
    now_utc: datetime | None = None,
) -> ChallengeIssued:
    now = _normalize_ts(now_utc)
    lat_value, lon_value = _require_location(lat, lon)
    _ensure_within_geofence(identity, lat_value, lon_value, action="clock-out")
    ensure_can_clock_out(db, employee_id=identity.employee_id, reference_ts_utc=now)

    # The initiate-time position becomes location.clock_out; verify does not re-check it.
    return _issue_and_dispatch(
        store,
        mail_sender,
        kind=ChallengeKind.CLOCK_OUT,
        identity=identity,
        action="clock out",
        context={"latitude": lat_value, "longitude": lon_value},
        now_utc=now,
    )


def verify_clock_out(
    db: Session,
    *,
    identity: EmployeeIdentity,
    code: str | None,
    store: ChallengeStore,
    now_utc: datetime | None = None,
) -> ClockOutResult:
    now = _normalize_ts(now_utc)
    normalized_code = _require_code(code)

    # Day state first: without an open record the code is irrelevant.
    try:
        ensure_can_clock_out(db, employee_id=identity.employee_id, reference_ts_utc=now)
    except ApiError:
        store.consume(ChallengeKind.CLOCK_OUT, identity.challenge_key)
        raise

    challenge = _load_verified_challenge(
        store,
        kind=ChallengeKind.CLOCK_OUT,
        identity=identity,
        code=normalized_code,
        now_utc=now,
    )

    try:
        record = close_attendance_record(
            db,
            employee_id=identity.employee_id,
            clock_out_ts_utc=now,
            lat=float(challenge.context["latitude"]),
            lon=float(challenge.context["longitude"]),
        )
    except ApiError as exc:
        if exc.code in {"NOT_CLOCKED_IN", "ALREADY_CLOCKED_OUT"}:
            store.consume(ChallengeKind.CLOCK_OUT, identity.challenge_key)
        raise

    store.consume(ChallengeKind.CLOCK_OUT, identity.challenge_key)
    total_hours = float(record.total_hours_worked or 0.0)
    logger.info(
        "clock_out_committed",
        extra={
            "employee_id": identity.employee_id,
            "record_id": record.id,
            "total_hours_worked": total_hours,
        },
    )
    return ClockOutResult(record=record, total_hours_worked=total_hours)
