"""Tests for the append-only change log."""

from __future__ import annotations

from codemender.change_log import ChangeLog
from codemender.diff_utils import generate_diff


class TestChangeLog:
    def test_records_are_appended(self) -> None:
        """Should keep records in write order."""
        log = ChangeLog()

        log.record(generate_diff("a.py", None, "a\n"))
        log.record(generate_diff("b.py", "b\n", "bb\n"))

        assert len(log) == 2
        assert [r.path for r in log.records] == ["a.py", "b.py"]
        assert log.records[1].diff.startswith("--- a/b.py")

    def test_records_view_is_read_only(self) -> None:
        """Should expose an immutable snapshot."""
        log = ChangeLog()
        log.record(generate_diff("a.py", None, "a\n"))

        assert isinstance(log.records, tuple)

    def test_empty_log_renders_nothing(self) -> None:
        """Should contribute nothing to a prompt when empty."""
        assert ChangeLog().format_recent_changes() == ""

    def test_recent_changes_are_limited(self) -> None:
        """Should render only the newest entries, oldest first."""
        log = ChangeLog()
        for name in ("a.py", "b.py", "c.py", "d.py"):
            log.record(generate_diff(name, None, "x\n"))

        text = log.format_recent_changes(limit=2)

        assert text.startswith("--- Recent Successful Changes ---")
        assert "`a.py`" not in text
        assert text.index("`c.py`") < text.index("`d.py`")
        assert "**CREATED**" in text

    def test_record_to_dict(self) -> None:
        """Should serialize the timestamp as ISO 8601."""
        entry = ChangeLog().record(generate_diff("a.py", "a\n", "b\n"))

        data = entry.to_dict()

        assert data["change_type"] == "modified"
        assert "T" in data["timestamp"]
