from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db import get_db
from app.errors import ApiError
from app.models import Employee
from app.schemas import AdminAttendanceRecordRead
from app.security import require_admin
from app.services.attendance import list_attendance_records, validate_date_range

router = APIRouter(tags=["admin"])


@router.get(
    "/api/admin/attendance",
    response_model=list[AdminAttendanceRecordRead],
)
def list_attendance(
    request: Request,
    employee_no: int | None = Query(default=None, ge=1),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    on_date: date | None = Query(default=None, alias="date"),
    limit: int = Query(default=100, ge=1, le=500),
    _claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[AdminAttendanceRecordRead]:
    validate_date_range(start_date, end_date)

    employee_id: int | None = None
    if employee_no is not None:
        employee = db.scalar(select(Employee).where(Employee.employee_no == employee_no))
        if employee is None:
            raise ApiError(
                status_code=404,
                code="EMPLOYEE_NOT_FOUND",
                message="Employee not found.",
            )
        employee_id = employee.id
        request.state.employee_id = employee.id

    records = list_attendance_records(
        db,
        employee_id=employee_id,
        start_date=start_date,
        end_date=end_date,
        on_date=on_date,
        limit=limit,
    )
    return [AdminAttendanceRecordRead.model_validate(item) for item in records]
