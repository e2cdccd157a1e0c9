"""
Tests for the admin attendance, weekly summary and scheduler endpoints.
Backend and clock are replaced through dependency_overrides.

Run with: python -m pytest tests/test_admin_routes.py -v
"""
import unittest

from fastapi.testclient import TestClient

from app.config import get_settings
from app.dependencies import get_backend, get_clock
from app.exceptions import PersistenceError
from app.main import create_app
from fakes import InMemoryBackend, make_record, make_settings, seoul

WEDNESDAY_NOON = seoul(2024, 1, 3, 12, 0)
FRIDAY_AFTERNOON = seoul(2024, 1, 5, 15, 0)


def week_records():
    return [
        make_record("김철수", seoul(2024, 1, 3, 9, 0), "개발팀", user_id="u1"),
        make_record("김철수", seoul(2024, 1, 3, 18, 0), "개발팀", action="퇴근", user_id="u1"),
        make_record("이영희", seoul(2024, 1, 3, 9, 10), "영업팀", user_id="u2", is_late=True, minutes_late=10),
        make_record("이영희", seoul(2024, 1, 5, 9, 30), "영업팀", user_id="u2", is_late=True, minutes_late=30),
        make_record("박민수", seoul(2024, 1, 2, 8, 50), "개발팀", user_id="u3"),
    ]


class BrokenBackend(InMemoryBackend):
    async def list_records(self, start, end):
        raise PersistenceError("sheet unavailable")


class AdminTestCase(unittest.TestCase):

    def setUp(self):
        self.settings = make_settings()
        self.backend = InMemoryBackend(week_records(), users=12)
        self.now = WEDNESDAY_NOON
        self.app = create_app(self.settings)
        self.app.dependency_overrides[get_settings] = lambda: self.settings
        self.app.dependency_overrides[get_backend] = lambda: self.backend
        self.app.dependency_overrides[get_clock] = lambda: (lambda: self.now)
        self.http = TestClient(self.app)


class TestDailyAttendance(AdminTestCase):

    def test_today(self):
        body = self.http.get("/api/admin/attendance").json()
        self.assertTrue(body["success"])
        self.assertEqual(body["date"], "2024-01-03")
        self.assertEqual([r["action"] for r in body["records"]], ["퇴근", "출근", "출근"])
        self.assertEqual(body["records"][0]["timestamp"], "2024-01-03T09:00:00.000Z")
        self.assertEqual(body["records"][0]["workingHours"], 9.0)
        self.assertIsNone(body["records"][1]["workingHours"])
        self.assertEqual(
            body["stats"],
            {"totalUsers": 12, "checkedInToday": 2, "lateToday": 1, "averageWorkingHours": 9.0},
        )

    def test_explicit_date(self):
        body = self.http.get("/api/admin/attendance", params={"date": "2024-01-02"}).json()
        self.assertEqual(body["date"], "2024-01-02")
        self.assertEqual([r["name"] for r in body["records"]], ["박민수"])

    def test_bad_date_falls_back_to_today(self):
        body = self.http.get("/api/admin/attendance", params={"date": "03/01/2024"}).json()
        self.assertEqual(body["date"], "2024-01-03")

    def test_missing_sheet_id(self):
        self.settings = make_settings(GOOGLE_SPREADSHEET_ID="", GOOGLE_SHEET_URL="https://example.com/not-a-sheet")
        response = self.http.get("/api/admin/attendance")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"success": False, "error": "구글 시트 ID를 추출할 수 없습니다."})

    def test_sheet_id_from_url(self):
        self.settings = make_settings(
            GOOGLE_SPREADSHEET_ID="",
            GOOGLE_SHEET_URL="https://docs.google.com/spreadsheets/d/1AbC-dEf_123/edit#gid=0",
        )
        self.assertEqual(self.settings.spreadsheet_id, "1AbC-dEf_123")
        self.assertEqual(self.http.get("/api/admin/attendance").status_code, 200)

    def test_backend_failure(self):
        self.backend = BrokenBackend()
        response = self.http.get("/api/admin/attendance")
        self.assertEqual(response.status_code, 500)
        self.assertIn("sheet unavailable", response.json()["details"])

    def test_admin_token_enforced(self):
        self.settings = make_settings(ADMIN_API_TOKEN="admin-token")
        self.assertEqual(self.http.get("/api/admin/attendance").status_code, 401)
        ok = self.http.get("/api/admin/attendance", headers={"Authorization": "Bearer admin-token"})
        self.assertEqual(ok.status_code, 200)
        ok = self.http.get("/api/weekly-summary", headers={"X-Admin-Token": "admin-token"})
        self.assertEqual(ok.status_code, 200)


class TestWeeklySummaryRoutes(AdminTestCase):

    def test_get_summary(self):
        body = self.http.get("/api/weekly-summary", params={"date": "2024-01-03"}).json()
        data = body["data"]
        self.assertTrue(body["success"])
        self.assertEqual((data["weekStart"], data["weekEnd"]), ("2023-12-31", "2024-01-06"))
        self.assertEqual(data["totalCheckins"], 4)
        self.assertEqual(data["totalEmployees"], 3)
        self.assertEqual(data["latestCheckin"]["name"], "이영희")
        self.assertEqual(data["departmentStats"]["영업팀"]["averageTime"], "09:20")
        self.assertEqual(self.backend.summaries, [])

    def test_post_without_save(self):
        body = self.http.post("/api/weekly-summary").json()
        self.assertEqual((body["savedToSheet"], body["sheetName"]), (False, None))
        self.assertEqual(self.backend.summaries, [])

    def test_post_with_save(self):
        body = self.http.post("/api/weekly-summary", params={"save": "true", "date": "2024-01-03"}).json()
        self.assertTrue(body["savedToSheet"])
        self.assertEqual(body["sheetName"], "주간결산_2023-12-31")
        self.assertEqual(self.backend.summaries[0]["totalCheckins"], 4)


class TestSchedulerRoutes(AdminTestCase):

    def test_status_outside_window(self):
        body = self.http.get("/api/scheduler/weekly-summary").json()
        self.assertTrue(body["success"])
        self.assertFalse(body["canRunNow"])
        self.assertFalse(body["isScheduledDay"])
        self.assertEqual(body["nextExecution"], "2024-01-05T14:00:00+09:00")
        self.assertEqual(body["currentTime"], "2024-01-03T12:00:00+09:00")

    def test_run_refused_outside_window(self):
        response = self.http.post("/api/scheduler/weekly-summary")
        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertFalse(body["success"])
        self.assertIn("금요일 14시", body["message"])
        self.assertEqual(self.backend.summaries, [])

    def test_forced_run(self):
        body = self.http.post("/api/scheduler/weekly-summary", params={"force": "true"}).json()
        self.assertTrue(body["success"])
        self.assertTrue(body["forced"])
        self.assertEqual(body["sheetName"], "주간결산_2023-12-31")
        self.assertEqual(body["executedAt"], "2024-01-03T12:00:00+09:00")
        self.assertEqual(len(self.backend.summaries), 1)

    def test_forced_run_for_explicit_week(self):
        body = self.http.post("/api/scheduler/weekly-summary", params={"force": "true", "date": "2023-12-28"}).json()
        self.assertTrue(body["success"])
        self.assertEqual(body["sheetName"], "주간결산_2023-12-24")
        self.assertEqual(body["data"]["totalCheckins"], 0)

    def test_run_inside_window(self):
        self.now = FRIDAY_AFTERNOON
        body = self.http.post("/api/scheduler/weekly-summary").json()
        self.assertTrue(body["success"])
        self.assertFalse(body["forced"])
        self.assertEqual(body["data"]["weekStart"], "2023-12-31")


if __name__ == "__main__":
    unittest.main()
