"""Unit tests for cleaner_utils/report_utils.py"""

import json
import os
import re
from datetime import datetime, timedelta, timezone

from cleaner_utils.report_utils import (
    add_timestamp_to_path,
    format_table,
    get_timestamp_suffix,
    save_json,
    save_table_and_json,
    to_jsonable,
)
from conftest import make_stage
from stages_cleaner.models import CleanupState


class TestSaveJson:
    """Tests for save_json function"""

    def test_save_nested_dict(self, tmp_path):
        file_path = str(tmp_path / "test.json")
        data = {"level1": {"level2": "value"}, "list": [1, 2, 3]}

        save_json(file_path, data)

        with open(file_path, "r") as f:
            assert json.load(f) == data

    def test_creates_parent_directories(self, tmp_path):
        file_path = str(tmp_path / "reports" / "nested" / "test.json")

        save_json(file_path, {"ok": True})

        assert os.path.exists(file_path)

    def test_timestamped_filename(self, tmp_path):
        saved = save_json(str(tmp_path / "report.json"), {}, timestamp=True)

        assert re.search(r"report-\d{4}-\d{2}-\d{2}-\d{2}-\d{2}-\d{2}\.json$", saved)


class TestSaveTableAndJson:
    """Tests for save_table_and_json function"""

    def test_writes_both_files(self, tmp_path):
        base = str(tmp_path / "cleanup-report")

        json_path = save_table_and_json(base, "table", {"deleted": 3}, timestamp=False)

        assert json_path == f"{base}.json"
        with open(f"{base}.txt") as f:
            assert f.read() == "table"
        with open(json_path) as f:
            assert json.load(f) == {"deleted": 3}

    def test_timestamp_applies_to_both_files(self, tmp_path):
        json_path = save_table_and_json(str(tmp_path / "cleanup-report"), "t", {}, timestamp=True)

        assert os.path.exists(json_path[: -len(".json")] + ".txt")


class TestToJsonable:
    def test_converts_report_values(self):
        when = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

        data = to_jsonable(
            {
                "state": CleanupState.DONE,
                "at": when,
                "expire": timedelta(days=1),
                "refs": frozenset({"b", "a"}),
                "pair": ("x", 1),
            }
        )

        assert data == {
            "state": "done",
            "at": "2024-06-01T12:00:00+00:00",
            "expire": 86400.0,
            "refs": ["a", "b"],
            "pair": ["x", 1],
        }

    def test_dataclasses(self):
        stage = make_stage("abc", parent="root")

        data = to_jsonable(stage)

        assert data["digest"] == "abc"
        assert data["parent_digest"] == "root"
        assert isinstance(data["created_at"], str)
        json.dumps(data)


class TestPathHelpers:
    def test_add_timestamp_to_path(self):
        assert add_timestamp_to_path("reports/cleanup.json", "2026-01-15-14-30-00") == os.path.join(
            "reports", "cleanup-2026-01-15-14-30-00.json"
        )

    def test_timestamp_suffix_format(self):
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}-\d{2}-\d{2}-\d{2}", get_timestamp_suffix())

    def test_format_table(self):
        table = format_table([["images", 3]], headers=["Phase", "Deleted"])

        assert "Phase" in table
        assert "images" in table
        assert table.startswith("+")
