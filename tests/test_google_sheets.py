"""
Tests for SheetsClient, the Sheets attendance backend and the Cloudinary uploader.
gspread is replaced by an in-memory spreadsheet; cloudinary.uploader.upload is patched.

Run with: python -m pytest tests/test_google_sheets.py -v
"""
import re
import unittest
from datetime import date
from unittest.mock import patch

import gspread
from cloudinary.exceptions import Error as CloudinaryError
from google.auth.exceptions import RefreshError

from app.exceptions import ConfigurationError, PersistenceError, UpstreamError
from app.models import AttendanceEvent
from app.services import cloudinary_service
from app.services.attendance_service import SheetsAttendanceBackend
from app.services.google_sheets import HEADER, SheetsClient, load_credentials
from app.services.summary_service import day_range, generate_weekly_summary
from app.state_store import TTLCache
from fakes import DEFAULT_USER, make_record, make_settings, seoul


class FakeWorksheet:
    def __init__(self, title, rows=None):
        self.title = title
        self.rows = [list(r) for r in (rows or [])]
        self.fail_writes = False

    def row_values(self, index):
        return list(self.rows[index - 1]) if len(self.rows) >= index else []

    def col_values(self, index):
        return [r[index - 1] for r in self.rows if len(r) >= index and r[index - 1] != ""]

    def update(self, range_name, values, value_input_option=None):
        match = re.match(r"A(\d+)", range_name)
        start = int(match.group(1)) - 1
        while len(self.rows) < start + len(values):
            self.rows.append([])
        for offset, row in enumerate(values):
            self.rows[start + offset] = list(row)

    def append_row(self, row, value_input_option=None):
        if self.fail_writes:
            raise RefreshError("token revoked")
        self.rows.append(list(row))

    def get_all_values(self):
        return [list(r) for r in self.rows]

    def clear(self):
        self.rows = []


class FakeSpreadsheet:
    def __init__(self, *worksheets, fail_metadata=False):
        self.sheets = list(worksheets)
        self.fail_metadata = fail_metadata
        self.metadata_calls = 0
        self.lookups = 0

    def worksheets(self):
        self.metadata_calls += 1
        if self.fail_metadata:
            raise RefreshError("token expired")
        return list(self.sheets)

    def worksheet(self, title):
        self.lookups += 1
        for ws in self.sheets:
            if ws.title == title:
                return ws
        raise gspread.exceptions.WorksheetNotFound(title)

    def add_worksheet(self, title, rows, cols):
        ws = FakeWorksheet(title)
        self.sheets.append(ws)
        return ws


class FakeSheetsClient(SheetsClient):
    def __init__(self, spreadsheet, **kwargs):
        kwargs.setdefault("tz_name", "Asia/Seoul")
        super().__init__("sheet-123", {}, **kwargs)
        self.spreadsheet = spreadsheet
        self.connects = 0

    def _connect(self):
        self.connects += 1
        return self.spreadsheet


def checkin_event(hour=9, minute=5, name_user=DEFAULT_USER):
    return AttendanceEvent(
        user_id="user-1",
        domain_id=300001,
        action="출근",
        timestamp=seoul(2024, 1, 3, hour, minute),
        method="manual",
        user_info=name_user,
        is_late=True,
        minutes_late=5,
    )


class TestSheetsClient(unittest.TestCase):

    def test_constructor_validation(self):
        with self.assertRaises(ConfigurationError):
            SheetsClient("", {})
        with self.assertRaises(ConfigurationError):
            SheetsClient("sheet-123", {}, write_strategy="insert")

    def test_load_credentials_requires_key(self):
        with self.assertRaises(ConfigurationError):
            load_credentials({"client_email": "svc@project.iam.gserviceaccount.com"})
        with self.assertRaises(ConfigurationError):
            load_credentials({"client_email": "svc@x", "private_key": "not a pem"})

    def test_sheet_index_resolved_and_cached(self):
        spreadsheet = FakeSpreadsheet(FakeWorksheet("출근기록"), FakeWorksheet("기타"))
        client = FakeSheetsClient(spreadsheet, name_cache=TTLCache())
        self.assertEqual(client.resolve_sheet_name(), "출근기록")
        self.assertEqual(client.resolve_sheet_name(), "출근기록")
        self.assertEqual(spreadsheet.metadata_calls, 1)

    def test_sheet_name_selector_used_directly(self):
        spreadsheet = FakeSpreadsheet()
        client = FakeSheetsClient(spreadsheet, worksheet="기록")
        self.assertEqual(client.resolve_sheet_name(), "기록")
        self.assertEqual(spreadsheet.metadata_calls, 0)

    def test_lookup_failure_falls_back_without_caching(self):
        spreadsheet = FakeSpreadsheet(FakeWorksheet("출근기록"), fail_metadata=True)
        client = FakeSheetsClient(spreadsheet)
        self.assertEqual(client.resolve_sheet_name(), "Sheet1")
        spreadsheet.fail_metadata = False
        self.assertEqual(client.resolve_sheet_name(), "출근기록")

    def test_append_writes_header_then_row(self):
        sheet = FakeWorksheet("출근기록")
        client = FakeSheetsClient(FakeSpreadsheet(sheet))
        result = client.write_attendance_row(checkin_event())

        self.assertEqual(result, {"sheet": "출근기록", "range": None})
        self.assertEqual(sheet.rows[0], HEADER)
        self.assertEqual(sheet.rows[1][2], "홍 길동")
        self.assertEqual(sheet.rows[1][8], "출근")

    def test_next_row_strategy(self):
        sheet = FakeWorksheet("출근기록", [HEADER, ["2024-01-02T00:00:00.000Z"]])
        client = FakeSheetsClient(FakeSpreadsheet(sheet), write_strategy="next_row")
        result = client.write_attendance_row(checkin_event())
        self.assertEqual(result["range"], "A3:V3")
        self.assertEqual(sheet.rows[2][0], "2024-01-03T00:05:00.000Z")

    def test_missing_worksheet_created(self):
        spreadsheet = FakeSpreadsheet()
        client = FakeSheetsClient(spreadsheet, worksheet="새시트")
        client.write_attendance_row(checkin_event())
        self.assertEqual([ws.title for ws in spreadsheet.sheets], ["새시트"])
        self.assertEqual(len(spreadsheet.sheets[0].rows), 2)

    def test_handles_reused_between_writes(self):
        sheet = FakeWorksheet("출근기록")
        spreadsheet = FakeSpreadsheet(sheet)
        client = FakeSheetsClient(spreadsheet)
        for _ in range(3):
            client.write_attendance_row(checkin_event())
        client.read_records()

        self.assertEqual(client.connects, 1)
        self.assertEqual(spreadsheet.metadata_calls, 1)
        self.assertEqual(spreadsheet.lookups, 1)
        self.assertEqual(len(sheet.rows), 4)

    def test_failed_write_drops_handles(self):
        sheet = FakeWorksheet("출근기록")
        client = FakeSheetsClient(FakeSpreadsheet(sheet))
        sheet.fail_writes = True
        with self.assertRaises(UpstreamError):
            client.write_attendance_row(checkin_event())

        sheet.fail_writes = False
        client.write_attendance_row(checkin_event())
        self.assertEqual(client.connects, 2)
        self.assertEqual(len(sheet.rows), 2)

    def test_rows_read_back(self):
        sheet = FakeWorksheet("출근기록")
        client = FakeSheetsClient(FakeSpreadsheet(sheet))
        client.write_attendance_row(checkin_event())
        sheet.rows.append(["garbage"])

        records = client.read_records()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].timestamp, seoul(2024, 1, 3, 9, 5))
        self.assertEqual(records[0].minutes_late, 5)

    def test_weekly_summary_sheet_replaced(self):
        old = FakeWorksheet("주간결산_2023-12-31", [["old"], ["content"], ["x"] * 20])
        spreadsheet = FakeSpreadsheet(FakeWorksheet("출근기록"), old)
        client = FakeSheetsClient(spreadsheet)
        summary = generate_weekly_summary(
            [make_record("김철수", seoul(2024, 1, 3, 9, 0))], date(2024, 1, 3)
        ).to_dict()

        self.assertEqual(client.save_weekly_summary(summary), "주간결산_2023-12-31")
        self.assertEqual(old.rows[0], ["주간 결산", "2023-12-31 ~ 2024-01-06"])
        self.assertNotIn(["old"], old.rows)

        summary["weekStart"] = "2024-01-07"
        self.assertEqual(client.save_weekly_summary(summary), "주간결산_2024-01-07")
        self.assertEqual(len(spreadsheet.sheets), 3)


class BrokenSheetsClient(FakeSheetsClient):
    def write_attendance_row(self, event):
        raise UpstreamError("google_sheets", 503, "backend error")


class TestSheetsBackend(unittest.IsolatedAsyncioTestCase):

    async def test_save_and_list(self):
        sheet = FakeWorksheet("출근기록")
        backend = SheetsAttendanceBackend(lambda: FakeSheetsClient(FakeSpreadsheet(sheet)))
        await backend.save(checkin_event(9, 5))
        await backend.save(checkin_event(8, 0))

        start, end = day_range(date(2024, 1, 3), "Asia/Seoul")
        records = await backend.list_records(start, end)
        self.assertEqual([r.timestamp for r in records], [seoul(2024, 1, 3, 8, 0), seoul(2024, 1, 3, 9, 5)])
        self.assertEqual(await backend.count_users(), 1)

        start, end = day_range(date(2024, 1, 4), "Asia/Seoul")
        self.assertEqual(await backend.list_records(start, end), [])

    async def test_client_built_once(self):
        built = []

        def factory():
            built.append(1)
            return FakeSheetsClient(FakeSpreadsheet(FakeWorksheet("출근기록")))

        backend = SheetsAttendanceBackend(factory)
        await backend.save(checkin_event())
        await backend.save(checkin_event())
        self.assertEqual(len(built), 1)

    async def test_upstream_failure_becomes_persistence_error(self):
        backend = SheetsAttendanceBackend(lambda: BrokenSheetsClient(FakeSpreadsheet()))
        with self.assertRaises(PersistenceError):
            await backend.save(checkin_event())


class TestCloudinaryUploader(unittest.TestCase):

    def settings(self, **overrides):
        values = dict(CLOUDINARY_CLOUD_NAME="demo", CLOUDINARY_API_KEY="key", CLOUDINARY_API_SECRET="secret")
        values.update(overrides)
        return make_settings(**values)

    def test_missing_configuration(self):
        upload = cloudinary_service.make_uploader(self.settings(CLOUDINARY_API_SECRET=""))
        with self.assertRaises(ConfigurationError):
            upload(b"RIFF0000WEBP", "attendance_u1_1")

    @patch("cloudinary.uploader.upload")
    def test_upload_returns_secure_url(self, mock_upload):
        mock_upload.return_value = {"secure_url": "https://res.cloudinary.com/demo/attendance/attendance_u1_1.webp"}
        url = cloudinary_service.make_uploader(self.settings())(b"RIFF0000WEBP", "attendance_u1_1")

        self.assertEqual(url, "https://res.cloudinary.com/demo/attendance/attendance_u1_1.webp")
        data_uri = mock_upload.call_args[0][0]
        self.assertTrue(data_uri.startswith("data:image/webp;base64,"))
        self.assertEqual(mock_upload.call_args[1]["public_id"], "attendance/attendance_u1_1")

    @patch("cloudinary.uploader.upload")
    def test_upload_failures(self, mock_upload):
        upload = cloudinary_service.make_uploader(self.settings())
        mock_upload.return_value = {}
        with self.assertRaises(UpstreamError):
            upload(b"RIFF0000WEBP", "attendance_u1_1")

        mock_upload.side_effect = CloudinaryError("quota exceeded")
        with self.assertRaises(UpstreamError):
            upload(b"RIFF0000WEBP", "attendance_u1_1")


if __name__ == "__main__":
    unittest.main()
