from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base
from app.models import Employee

TEST_JWT_SECRET = "test-jwt-secret"

# Lower Manhattan; the fixture points below sit about 11 m and 1.1 km away.
OFFICE_LAT = 40.7128
OFFICE_LON = -74.0060
NEAR_OFFICE = (40.7129, -74.0060)
FAR_FROM_OFFICE = (40.7228, -74.0060)

BASE_ENV = {
    "JWT_SECRET": TEST_JWT_SECRET,
    "OFFICE_LAT": str(OFFICE_LAT),
    "OFFICE_LON": str(OFFICE_LON),
    "ALLOWED_DISTANCE_METERS": "100",
    "OFFICE_START_TIME": "09:30",
    "ATTENDANCE_TIMEZONE": "UTC",
    "OTP_TTL_MINUTES": "3",
    "OTP_MAX_ATTEMPTS": "5",
    "MAIL_BACKEND": "log",
    "CHALLENGE_STORE_BACKEND": "memory",
}

_CODE_PATTERN = re.compile(r"is: (\d{6})")


def make_sqlite_engine() -> Engine:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def add_employee(
    session: Session,
    *,
    employee_no: int = 1001,
    first_name: str = "Ada",
    last_name: str = "Lovelace",
    email: str = "ada@example.com",
) -> Employee:
    employee = Employee(
        employee_no=employee_no,
        first_name=first_name,
        last_name=last_name,
        email=email,
        is_active=True,
    )
    session.add(employee)
    session.commit()
    session.refresh(employee)
    return employee


def issue_token(*, role: str, subject: str, expires_in: timedelta = timedelta(hours=1), **claims: object) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "role": role,
        "iss": "geoclock-auth",
        "aud": "geoclock-api",
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
        **claims,
    }
    return jwt.encode(payload, TEST_JWT_SECRET, algorithm="HS256")


def extract_code(body: str) -> str:
    match = _CODE_PATTERN.search(body)
    if match is None:
        raise AssertionError(f"no code in mail body: {body!r}")
    return match.group(1)
