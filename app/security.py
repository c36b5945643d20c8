from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.errors import ApiError
from app.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

ROLE_EMPLOYEE = "employee"
ROLE_ADMIN = "admin"


@dataclass(frozen=True, slots=True)
class EmployeeIdentity:
    employee_id: int
    email: str
    first_name: str
    employee_no: int | None = None

    @property
    def challenge_key(self) -> str:
        return str(self.employee_id)


def decode_token(token: str, *, expected_role: str) -> dict[str, Any]:
    settings = get_settings()
    if not (settings.jwt_secret or "").strip():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token verification is not configured.")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    if payload.get("role") != expected_role:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")

    return payload


def identity_from_claims(claims: dict[str, Any]) -> EmployeeIdentity:
    subject = str(claims.get("sub") or "")
    if not subject.isdigit():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")
    email = str(claims.get("email") or "").strip()
    if not email:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token has no email claim.")
    raw_employee_no = claims.get("employee_no")
    return EmployeeIdentity(
        employee_id=int(subject),
        email=email,
        first_name=str(claims.get("first_name") or "").strip(),
        employee_no=int(raw_employee_no) if isinstance(raw_employee_no, int) else None,
    )


def _bearer_token(credentials: HTTPAuthorizationCredentials | None) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")
    return credentials.credentials


def require_employee(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> EmployeeIdentity:
    payload = decode_token(_bearer_token(credentials), expected_role=ROLE_EMPLOYEE)
    identity = identity_from_claims(payload)

    request.state.actor = ROLE_EMPLOYEE
    request.state.actor_id = str(identity.employee_id)
    request.state.employee_id = identity.employee_id
    return identity


def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    payload = decode_token(_bearer_token(credentials), expected_role=ROLE_ADMIN)

    request.state.actor = ROLE_ADMIN
    request.state.actor_id = str(payload.get("email") or payload.get("sub") or "admin")
    return payload
