from __future__ import annotations

import os
import unittest
from collections.abc import Generator
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db import get_db
from app.main import app
from app.models import AuditActorType, AuditLog
from app.services.attendance import _attendance_timezone
from app.services.challenges import InMemoryChallengeStore, get_challenge_store
from app.services.mail import LogMailSender, get_mail_sender
from app.settings import get_settings
from tests.support import (
    BASE_ENV,
    FAR_FROM_OFFICE,
    NEAR_OFFICE,
    add_employee,
    extract_code,
    issue_token,
    make_session_factory,
    make_sqlite_engine,
)


class AttendanceEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, BASE_ENV, clear=False)
        self._env.start()
        get_settings.cache_clear()
        _attendance_timezone.cache_clear()

        self.engine = make_sqlite_engine()
        self.session_factory = make_session_factory(self.engine)
        with self.session_factory() as session:
            employee = add_employee(session)
            self.employee_id = employee.id

        self.store = InMemoryChallengeStore()
        self.mail = LogMailSender()

        def _override_get_db() -> Generator[Session, None, None]:
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _override_get_db
        app.dependency_overrides[get_challenge_store] = lambda: self.store
        app.dependency_overrides[get_mail_sender] = lambda: self.mail
        self.client = TestClient(app)
        self.headers = {
            "Authorization": "Bearer "
            + issue_token(
                role="employee",
                subject=str(self.employee_id),
                email="ada@example.com",
                first_name="Ada",
            )
        }

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.engine.dispose()
        self._env.stop()
        get_settings.cache_clear()
        _attendance_timezone.cache_clear()

    def _position(self, point: tuple[float, float]) -> dict[str, float]:
        return {"latitude": point[0], "longitude": point[1]}

    def _latest_code(self) -> str:
        return extract_code(self.mail.latest_for("ada@example.com").body)

    def test_clock_in_and_out_round_trip(self) -> None:
        response = self.client.post(
            "/api/attendance/clock-in/initiate",
            json=self._position(NEAR_OFFICE),
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["ok"])
        self.assertGreaterEqual(body["expires_in_seconds"], 170)
        self.assertLessEqual(body["expires_in_seconds"], 180)
        self.assertNotIn(self._latest_code(), response.text)

        response = self.client.post(
            "/api/attendance/clock-in/verify",
            json={"code": self._latest_code(), **self._position(NEAR_OFFICE)},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["message"], "Clock-in successful.")
        self.assertIn("is_late", body)
        self.assertEqual(body["record"]["employee_id"], self.employee_id)
        self.assertEqual(body["record"]["status"], "present")
        self.assertEqual(
            body["record"]["location"],
            {"clock_in": self._position(NEAR_OFFICE), "clock_out": None},
        )

        today = self.client.get("/api/attendance/today", headers=self.headers).json()
        self.assertEqual(today["state"], "CLOCKED_IN")
        self.assertEqual(today["record"]["id"], body["record"]["id"])

        response = self.client.post(
            "/api/attendance/clock-out/initiate",
            json=self._position(NEAR_OFFICE),
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)

        response = self.client.post(
            "/api/attendance/clock-out/verify",
            json={"code": self._latest_code()},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertGreaterEqual(body["total_hours_worked"], 0.0)
        self.assertIsNotNone(body["record"]["clock_out_time"])
        self.assertEqual(body["record"]["location"]["clock_out"], self._position(NEAR_OFFICE))

        today = self.client.get("/api/attendance/today", headers=self.headers).json()
        self.assertEqual(today["state"], "CLOCKED_OUT")

        history = self.client.get("/api/attendance/me", headers=self.headers)
        self.assertEqual(history.status_code, 200)
        self.assertEqual(len(history.json()), 1)

        with self.session_factory() as session:
            actions = [
                (row.action, row.success, row.actor_type)
                for row in session.scalars(select(AuditLog).order_by(AuditLog.id)).all()
            ]
        self.assertEqual(
            actions,
            [
                ("ATTENDANCE_CLOCK_IN_OTP_ISSUED", True, AuditActorType.EMPLOYEE),
                ("ATTENDANCE_CLOCK_IN", True, AuditActorType.EMPLOYEE),
                ("ATTENDANCE_CLOCK_OUT_OTP_ISSUED", True, AuditActorType.EMPLOYEE),
                ("ATTENDANCE_CLOCK_OUT", True, AuditActorType.EMPLOYEE),
            ],
        )

    def test_today_without_record(self) -> None:
        response = self.client.get("/api/attendance/today", headers=self.headers)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"state": "NO_RECORD", "record": None})

    def test_missing_location_uses_error_envelope(self) -> None:
        response = self.client.post(
            "/api/attendance/clock-in/initiate",
            json={"latitude": 40.7},
            headers={**self.headers, "X-Request-Id": "req-123"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.headers["X-Request-Id"], "req-123")
        self.assertEqual(
            response.json(),
            {
                "error": {
                    "code": "LOCATION_REQUIRED",
                    "message": "Location data is required.",
                    "request_id": "req-123",
                }
            },
        )

    def test_out_of_range_reports_distance_and_is_audited(self) -> None:
        response = self.client.post(
            "/api/attendance/clock-in/initiate",
            json=self._position(FAR_FROM_OFFICE),
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 403)
        error = response.json()["error"]
        self.assertEqual(error["code"], "OUT_OF_RANGE")
        self.assertEqual(error["details"]["radius_m"], 100.0)
        self.assertGreater(error["details"]["distance_m"], 1000)

        with self.session_factory() as session:
            audit = session.scalars(select(AuditLog)).one()
        self.assertFalse(audit.success)
        self.assertEqual(audit.details["error_code"], "OUT_OF_RANGE")

    def test_out_of_bounds_coordinates_fail_validation(self) -> None:
        response = self.client.post(
            "/api/attendance/clock-in/initiate",
            json={"latitude": 91, "longitude": 0},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_wrong_code_reports_attempts_left(self) -> None:
        self.client.post("/api/attendance/clock-in/initiate", json=self._position(NEAR_OFFICE), headers=self.headers)
        code = self._latest_code()
        wrong = "000000" if code != "000000" else "111111"

        response = self.client.post(
            "/api/attendance/clock-in/verify",
            json={"code": wrong, **self._position(NEAR_OFFICE)},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "MISMATCH")
        self.assertEqual(response.json()["error"]["details"], {"attempts_left": 4})

    def test_clock_out_verify_without_clock_in(self) -> None:
        response = self.client.post(
            "/api/attendance/clock-out/verify",
            json={"code": "123456"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "NOT_CLOCKED_IN")

    def test_missing_token_is_rejected(self) -> None:
        response = self.client.post("/api/attendance/clock-in/initiate", json=self._position(NEAR_OFFICE))
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TOKEN")

    def test_admin_token_cannot_clock_in(self) -> None:
        admin_token = issue_token(role="admin", subject="admin", email="boss@example.com")
        response = self.client.post(
            "/api/attendance/clock-in/initiate",
            json=self._position(NEAR_OFFICE),
            headers={"Authorization": f"Bearer {admin_token}"},
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_history_rejects_half_open_range(self) -> None:
        response = self.client.get(
            "/api/attendance/me",
            params={"start_date": "2026-03-01"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")


class HealthEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self._env = patch.dict(os.environ, BASE_ENV, clear=False)
        self._env.start()
        get_settings.cache_clear()
        get_challenge_store.cache_clear()
        get_mail_sender.cache_clear()

    def tearDown(self) -> None:
        self._env.stop()
        get_settings.cache_clear()
        get_challenge_store.cache_clear()
        get_mail_sender.cache_clear()

    def test_health_reports_runtime_configuration(self) -> None:
        response = TestClient(app).get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertTrue(body["geofence_configured"])
        self.assertEqual(body["challenge_store"], "memory")
        self.assertEqual(body["mail"], {"mode": "log"})
        self.assertIn("ok", body["schema_guard"])


if __name__ == "__main__":
    unittest.main()
