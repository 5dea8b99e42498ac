"""Tests for push/pull report formatting."""

from notebackup.sync.models import PullResult, PushResult
from notebackup.sync.reporter import (
    format_pull_report,
    format_push_report,
    report_to_json,
)


class TestFormatPushReport:
    def test_nothing_changed(self):
        assert format_push_report(PushResult()) == "Push: backup already up to date"

    def test_counts_cleanup_and_manifest(self):
        report = format_push_report(
            PushResult(
                documents_written=2,
                assets_written=3,
                manifest_written=True,
                cleaned_up=1,
            )
        )
        assert report.splitlines() == [
            "Push: 2 documents written, 3 assets written",
            "  Removed 1 orphaned entries",
            "  Manifest updated",
        ]


class TestFormatPullReport:
    def test_summary_only(self):
        assert format_pull_report(PullResult(created=1, updated=2)) == (
            "Pull: 1 created, 2 updated, 0 deleted, 0 errors"
        )

    def test_errors_listed(self):
        report = format_pull_report(
            PullResult(errors=["Cannot create Plan: no write permission"])
        )
        assert report.splitlines() == [
            "Pull: 0 created, 0 updated, 0 deleted, 1 errors",
            "",
            "Errors:",
            "  Cannot create Plan: no write permission",
        ]


class TestReportToJson:
    def test_push_only(self):
        report = report_to_json(push=PushResult(documents_written=1))
        assert report == {
            "ok": True,
            "push": {
                "documents_written": 1,
                "assets_written": 0,
                "manifest_written": False,
                "cleaned_up": 0,
            },
        }

    def test_pull_errors_not_ok(self):
        report = report_to_json(pull=PullResult(deleted=1, errors=["x"]))
        assert report["ok"] is False
        assert report["pull"] == {
            "created": 0,
            "updated": 0,
            "deleted": 1,
            "errors": ["x"],
        }
        assert "push" not in report
