from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models import AttendanceStatus
from app.services.attendance import AttendanceState


class ClockActionLocationRequest(BaseModel):
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)


class ClockInVerifyRequest(ClockActionLocationRequest):
    code: str | None = Field(default=None, max_length=16)


class ClockOutVerifyRequest(BaseModel):
    code: str | None = Field(default=None, max_length=16)


class ChallengeIssuedResponse(BaseModel):
    ok: bool = True
    message: str
    expires_at: datetime
    expires_in_seconds: int


class GeoPointRead(BaseModel):
    latitude: float
    longitude: float


class AttendanceLocationRead(BaseModel):
    clock_in: GeoPointRead
    clock_out: GeoPointRead | None = None


class AttendanceRecordRead(BaseModel):
    id: int
    employee_id: int
    work_date: date
    clock_in_time: datetime
    clock_out_time: datetime | None = None
    is_late: bool
    status: AttendanceStatus
    total_hours_worked: float | None = None
    location: AttendanceLocationRead

    model_config = ConfigDict(from_attributes=True)


class AttendanceEmployeeRead(BaseModel):
    id: int
    employee_no: int
    first_name: str
    last_name: str
    email: str

    model_config = ConfigDict(from_attributes=True)


class AdminAttendanceRecordRead(AttendanceRecordRead):
    employee: AttendanceEmployeeRead | None = None


class ClockInVerifyResponse(BaseModel):
    ok: bool = True
    message: str
    is_late: bool
    record: AttendanceRecordRead


class ClockOutVerifyResponse(BaseModel):
    ok: bool = True
    message: str
    total_hours_worked: float
    record: AttendanceRecordRead


class TodayAttendanceResponse(BaseModel):
    state: AttendanceState
    record: AttendanceRecordRead | None = None

