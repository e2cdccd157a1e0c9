"""
Tests for weekly summary aggregation, week boundaries, the scheduler window,
daily stats and reading attendance rows back from a sheet.

Run with: python -m pytest tests/test_weekly_summary.py -v
"""
import unittest
from datetime import date, datetime

from app.models import AttendanceEvent, LocationInfo, RequestInfo
from app.services.attendance_service import compute_daily_stats, load_user_status
from app.services.google_sheets import HEADER, build_row, build_summary_rows, parse_rows
from app.services.summary_service import (
    generate_weekly_summary,
    month_range,
    next_execution,
    resolve_reference_date,
    scheduler_window,
    week_range,
)
from app.utils import get_zone
from fakes import DEFAULT_USER, InMemoryBackend, make_record, seoul

TZ = "Asia/Seoul"


class TestWeeklySummary(unittest.TestCase):

    def test_two_checkins_in_one_week(self):
        records = [
            make_record("김철수", seoul(2024, 1, 3, 9, 0), "개발팀"),
            make_record("이영희", seoul(2024, 1, 5, 9, 30), "영업팀"),
        ]
        summary = generate_weekly_summary(records, date(2024, 1, 3), TZ).to_dict()

        self.assertEqual(summary["weekStart"], "2023-12-31")
        self.assertEqual(summary["weekEnd"], "2024-01-06")
        self.assertEqual(summary["totalCheckins"], 2)
        self.assertEqual(summary["totalEmployees"], 2)
        self.assertEqual(summary["averageCheckinTime"], "09:15")
        self.assertEqual(summary["latestCheckin"], {"name": "이영희", "time": "2024-01-05 09:30", "department": "영업팀"})
        self.assertEqual(summary["departmentStats"]["개발팀"]["totalCheckins"], 1)
        self.assertEqual(summary["departmentStats"]["영업팀"]["averageTime"], "09:30")
        print("[OK] weekly summary aggregates two check-ins")

    def test_empty_week(self):
        summary = generate_weekly_summary([], date(2024, 1, 3), TZ).to_dict()
        self.assertEqual(summary["totalCheckins"], 0)
        self.assertEqual(summary["totalEmployees"], 0)
        self.assertEqual(summary["averageCheckinTime"], "00:00")
        self.assertEqual(summary["latestCheckin"], {"name": "데이터없음", "time": "-", "department": "-"})
        self.assertEqual(summary["departmentStats"], {})

    def test_only_checkins_inside_week_count(self):
        records = [
            make_record("김철수", seoul(2024, 1, 3, 9, 0)),
            make_record("김철수", seoul(2024, 1, 3, 18, 0), action="퇴근"),
            make_record("김철수", seoul(2023, 12, 30, 23, 59)),  # previous Saturday
            make_record("김철수", seoul(2024, 1, 7, 0, 0)),  # next Sunday
            make_record("박민수", seoul(2024, 1, 6, 23, 59), "", action="위치출근"),
        ]
        summary = generate_weekly_summary(records, date(2024, 1, 3), TZ)
        self.assertEqual(summary.totalCheckins, 2)
        self.assertEqual(summary.totalEmployees, 2)
        self.assertIn("미지정", summary.departmentStats)
        self.assertEqual(summary.latestCheckin.name, "박민수")

    def test_average_rounds_half_up(self):
        records = [
            make_record("a", seoul(2024, 1, 3, 9, 0)),
            make_record("b", seoul(2024, 1, 4, 9, 1)),
        ]
        # 540.5 minutes -> 541
        self.assertEqual(generate_weekly_summary(records, date(2024, 1, 3), TZ).averageCheckinTime, "09:01")

    def test_week_range_sunday_based(self):
        start, end = week_range(date(2024, 1, 7), TZ)  # a Sunday
        self.assertEqual(start.date(), date(2024, 1, 7))
        self.assertEqual(end.date(), date(2024, 1, 14))
        start, _ = week_range(date(2024, 1, 6), TZ)  # a Saturday
        self.assertEqual(start.date(), date(2023, 12, 31))

    def test_summary_rows(self):
        records = [make_record("김철수", seoul(2024, 1, 3, 9, 0), "개발팀")]
        rows = build_summary_rows(generate_weekly_summary(records, date(2024, 1, 3), TZ).to_dict())
        self.assertEqual(rows[0], ["주간 결산", "2023-12-31 ~ 2024-01-06"])
        self.assertEqual(rows[-1], ["개발팀", 1, "09:00", "김철수", "2024-01-03 09:00"])


class TestSchedulerWindow(unittest.TestCase):

    def local(self, *args):
        return datetime(*args, tzinfo=get_zone(TZ))

    def test_open_on_day_after_hour(self):
        window = scheduler_window(self.local(2024, 1, 5, 14, 30), weekday=4, hour=14)  # Friday
        self.assertTrue(window["isScheduledDay"])
        self.assertTrue(window["isAfterHour"])
        self.assertTrue(window["canRunNow"])

    def test_closed_before_hour(self):
        window = scheduler_window(self.local(2024, 1, 5, 13, 59), weekday=4, hour=14)
        self.assertTrue(window["isScheduledDay"])
        self.assertFalse(window["isAfterHour"])
        self.assertFalse(window["canRunNow"])
        self.assertIn("금요일", window["message"])
        self.assertEqual(window["nextExecution"], "2024-01-05T14:00:00+09:00")

    def test_next_execution_rolls_over(self):
        self.assertEqual(
            next_execution(self.local(2024, 1, 5, 14, 0, 1), 4, 14),
            self.local(2024, 1, 12, 14, 0),
        )
        self.assertEqual(
            next_execution(self.local(2024, 1, 7, 9, 0), 4, 14),
            self.local(2024, 1, 12, 14, 0),
        )

    def test_reference_date(self):
        now = seoul(2024, 1, 3, 0, 30)
        self.assertEqual(resolve_reference_date(None, now, TZ), date(2024, 1, 3))
        self.assertEqual(resolve_reference_date(date(2023, 5, 1), now, TZ), date(2023, 5, 1))


class TestDailyStats(unittest.TestCase):

    def test_stats(self):
        records = [
            make_record("김철수", seoul(2024, 1, 3, 9, 0), user_id="u1"),
            make_record("김철수", seoul(2024, 1, 3, 18, 0), action="퇴근", user_id="u1"),
            make_record("이영희", seoul(2024, 1, 3, 9, 20), user_id="u2", is_late=True, minutes_late=20),
            make_record("이영희", seoul(2024, 1, 3, 17, 20), action="퇴근", user_id="u2"),
            make_record("이영희", seoul(2024, 1, 3, 18, 0), action="위치출근", user_id="u2", is_late=True),
        ]
        stats = compute_daily_stats(records, total_users=10)
        self.assertEqual(stats["totalUsers"], 10)
        self.assertEqual(stats["checkedInToday"], 2)
        self.assertEqual(stats["lateToday"], 2)
        # u1: 9h, u2: 8h
        self.assertEqual(stats["averageWorkingHours"], 8.5)

    def test_no_records(self):
        self.assertEqual(
            compute_daily_stats([], total_users=3),
            {"totalUsers": 3, "checkedInToday": 0, "lateToday": 0, "averageWorkingHours": 0},
        )


class TestUserStatus(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.backend = InMemoryBackend([
            make_record("홍 길동", seoul(2023, 12, 29, 9, 30), user_id="user-1", is_late=True, minutes_late=30),
            make_record("홍 길동", seoul(2024, 1, 2, 9, 10), user_id="user-1", is_late=True, minutes_late=10),
            make_record("홍 길동", seoul(2024, 1, 2, 18, 10), action="퇴근", user_id="user-1"),
            make_record("홍 길동", seoul(2024, 1, 3, 8, 55), user_id="user-1"),
            make_record("홍 길동", seoul(2024, 1, 3, 12, 25), action="퇴근", user_id="user-1"),
            make_record("김철수", seoul(2024, 1, 3, 7, 0), user_id="user-2"),
        ])

    async def test_today_and_month(self):
        status = await load_user_status(self.backend, "user-1", seoul(2024, 1, 3, 13, 0), TZ)
        self.assertEqual(status.first_checkin, seoul(2024, 1, 3, 8, 55))
        self.assertEqual(status.working_hours, 3.5)
        self.assertEqual((status.checkin_count, status.checkout_count, status.late_count), (2, 2, 1))

    async def test_unknown_user(self):
        status = await load_user_status(self.backend, "user-9", seoul(2024, 1, 3, 13, 0), TZ)
        self.assertIsNone(status.first_checkin)
        self.assertEqual((status.working_hours, status.checkin_count), (0, 0))

    def test_month_range_rolls_over_year(self):
        start, end = month_range(date(2023, 12, 15), TZ)
        self.assertEqual(start, datetime(2023, 12, 1, tzinfo=get_zone(TZ)))
        self.assertEqual(end, datetime(2024, 1, 1, tzinfo=get_zone(TZ)))


class TestSheetRows(unittest.TestCase):

    def test_build_row_layout(self):
        event = AttendanceEvent(
            user_id="user-1",
            domain_id=300001,
            action="위치출근",
            timestamp=seoul(2024, 1, 3, 9, 5),
            method="location",
            user_info=DEFAULT_USER,
            location=LocationInfo(address="서울시 중구", latitude=37.566535, longitude=126.977969,
                                  verified=False, notes="좌표 정밀도 낮음"),
            request_info=RequestInfo(ip="1.2.3.4"),
            is_late=True,
            minutes_late=5,
        )
        row = build_row(event, TZ)
        self.assertEqual(len(row), len(HEADER))
        self.assertEqual(row[0], "2024-01-03T00:05:00.000Z")
        self.assertEqual(row[1], "2024-01-03 09:05:00")
        self.assertEqual(row[2], "홍 길동")
        self.assertEqual(row[10], "네이버웍스 봇")
        self.assertEqual(row[13:15], ["Y", 5])
        self.assertEqual(row[18], "미확인")
        self.assertEqual(row[19], "좌표 정밀도 낮음")
        self.assertEqual(row[21], "1.2.3.4")

    def test_parse_rows_skips_header_and_bad_rows(self):
        good = ["2024-01-03T00:05:00.000Z", "2024-01-03 09:05:00", "홍 길동", "hong@example.com",
                "개발팀", "사원", "팀원", "E001", "출근", "300001", "네이버웍스 봇", "", "manual",
                "Y", "5", "", "", "", "", "", "user-1", ""]
        rows = [
            HEADER,
            good,
            ["not-a-time", "", "누군가", "", "", "", "", "", "출근"],
            ["2024-01-03T00:05:00.000Z", "short row"],
            [],
        ]
        records = parse_rows(rows)
        self.assertEqual(len(records), 1)
        record = records[0]
        self.assertEqual(record.name, "홍 길동")
        self.assertEqual(record.action, "출근")
        self.assertTrue(record.is_late)
        self.assertEqual(record.minutes_late, 5)
        self.assertEqual(record.user_id, "user-1")
        self.assertEqual(record.timestamp, seoul(2024, 1, 3, 9, 5))

    def test_unreadable_late_minutes_do_not_drop_rows(self):
        """A hand-edited 지각(분) cell is read as 0 instead of failing the whole sheet."""
        base = ["2024-01-03T00:05:00.000Z", "", "홍 길동", "", "개발팀", "", "", "", "출근", "", "", "", "manual", "Y"]
        rows = [HEADER] + [base + [cell] for cell in ("inf", "-inf", "nan", "1e400", "다섯")]

        records = parse_rows(rows)
        self.assertEqual(len(records), 5)
        self.assertEqual({r.minutes_late for r in records}, {0})
        self.assertTrue(all(r.is_late for r in records))


if __name__ == "__main__":
    unittest.main()
