"""
Unit tests for the Google Sheets KPI import.

Covers:
- parse_kpi_rows(): header aliases, percent strings, blank and incomplete rows
- read_kpi_rows(): configuration checks and worksheet lookup (gspread stubbed)
"""

import gspread
import pytest

from kpi_compliance.integrations import google_sheets
from kpi_compliance.integrations.google_sheets import SheetsSettings, parse_kpi_rows, read_kpi_rows

HEADER = ["Employee Code", "Period", "TAT", "Major Negativity", "Quality", "Neighbor Check",
          "Negativity", "App Usage", "Insufficiency", "Remarks", "Unused"]


class TestParse:
    def test_aliases_and_percent_strings(self):
        values = [HEADER, ["FE001", "2025-05", "95%", "0", "0", "90", "10", "90", "0.5", "Great month", "x"]]
        parsed = parse_kpi_rows(values)
        assert parsed["count"] == 1
        item = parsed["items"][0]
        assert item["employee_code"] == "FE001"
        assert item["tat"] == pytest.approx(95.0)
        assert item["comments"] == "Great month"
        assert "Unused" not in item

    def test_blank_rows_ignored_incomplete_rows_skipped(self):
        values = [
            HEADER,
            ["", "", "", "", "", "", "", "", "", "", ""],
            ["", "2025-05", "95", "0", "0", "90", "10", "90", "0.5", "", ""],
            ["FE002", "", "95", "0", "0", "90", "10", "90", "0.5", "", ""],
            ["FE003", "2025-05", "n/a", "0", "0", "90", "10", "90", "0.5"],
        ]
        parsed = parse_kpi_rows(values)
        assert parsed["skipped"] == 2
        assert parsed["count"] == 1
        assert parsed["items"][0]["tat"] is None

    def test_snake_case_and_email_header(self):
        values = [["email", "month", "app_usage"], ["ravi@example.com", "2025-05", "81"]]
        item = parse_kpi_rows(values)["items"][0]
        assert item["email"] == "ravi@example.com"
        assert item["period"] == "2025-05"
        assert item["app_usage"] == pytest.approx(81.0)

    def test_empty_sheet(self):
        assert parse_kpi_rows([]) == {"count": 0, "skipped": 0, "items": []}


class FakeWorksheet:
    def __init__(self, values):
        self._values = values

    def get_all_values(self):
        return self._values


class FakeSpreadsheet:
    title = "FE KPI"

    def __init__(self, sheets):
        self._sheets = sheets

    def worksheet(self, name):
        if name not in self._sheets:
            raise gspread.WorksheetNotFound(name)
        return self._sheets[name]


class TestRead:
    def test_unconfigured(self):
        with pytest.raises(ValueError, match="not configured"):
            read_kpi_rows(SheetsSettings(spreadsheet_id=""))

    def test_reads_worksheet(self, monkeypatch):
        values = [HEADER, ["FE001", "2025-05", "95", "0", "0", "90", "10", "90", "0.5", "", ""]]
        ss = FakeSpreadsheet({"KPI": FakeWorksheet(values)})
        monkeypatch.setattr(google_sheets, "get_spreadsheet_and_meta", lambda s: (ss, {"title": ss.title}))
        result = read_kpi_rows(SheetsSettings(spreadsheet_id="abc", sa_json="{}"))
        assert result["meta"]["title"] == "FE KPI"
        assert result["count"] == 1

    def test_missing_worksheet(self, monkeypatch):
        ss = FakeSpreadsheet({})
        monkeypatch.setattr(google_sheets, "get_spreadsheet_and_meta", lambda s: (ss, {}))
        with pytest.raises(ValueError, match="Worksheet not found"):
            read_kpi_rows(SheetsSettings(spreadsheet_id="abc", sa_file="/tmp/sa.json", worksheet="Q2"))

    def test_bad_service_account_json(self):
        with pytest.raises(ValueError, match="not valid JSON"):
            google_sheets._load_credentials(sa_json="{not json")
