"""
Unit tests for timeline validation.
"""

import pytest

from conftest import make_record
from epubsync.validator import SyncValidator


class TestSyncValidator:
    """Tests for SyncValidator class."""

    @pytest.fixture
    def validator(self):
        return SyncValidator(gap_threshold=0.5)

    def test_clean_timeline(self, validator):
        """Test contiguous records pass without issues."""
        records = [
            make_record("page1_p1_s1", 0.0, 2.0),
            make_record("page1_p1_s2", 2.0, 4.0),
        ]

        report = validator.validate(records, audio_duration=4.0)

        assert report.is_valid
        assert report.error_count == 0
        assert report.warning_count == 0

    def test_end_past_audio_duration(self, validator):
        """Test a record ending after the audio is an error, neighbours unaffected."""
        records = [
            make_record("f1", 0.0, 2.0),
            make_record("f2", 2.0, 5.0),
        ]

        report = validator.validate(records, audio_duration=4.0)

        assert report.error_count == 1
        assert report.warning_count == 0
        assert report.errors[0].fragment_id == "f2"
        assert report.errors[0].kind == "exceeds_duration"
        assert report.rejected_ids() == {"f2"}

    def test_overlap_warning(self, validator):
        """Test overlapping records produce one warning naming both fragments."""
        records = [
            make_record("f1", 0.0, 5.0),
            make_record("f2", 4.0, 8.0),
        ]

        report = validator.validate(records, audio_duration=10.0)

        assert report.is_valid
        assert report.warning_count == 1
        warning = report.warnings[0]
        assert warning.kind == "overlap"
        assert {warning.fragment_id, warning.neighbor_fragment_id} == {"f1", "f2"}

    def test_gap_warning(self, validator):
        """Test silence above the threshold is reported."""
        records = [
            make_record("f1", 0.0, 1.0),
            make_record("f2", 2.0, 3.0),
        ]

        report = validator.validate(records)

        assert report.warning_count == 1
        assert report.warnings[0].kind == "gap"

    def test_gap_below_threshold(self, validator):
        """Test short pauses are not reported."""
        records = [
            make_record("f1", 0.0, 1.0),
            make_record("f2", 1.4, 3.0),
        ]

        assert validator.validate(records).warning_count == 0

    def test_inverted_range(self, validator):
        """Test end <= start is an error."""
        report = validator.validate([make_record("f1", 3.0, 3.0), make_record("f2", 5.0, 4.0)])

        assert report.error_count == 2
        assert all(issue.kind == "invalid_range" for issue in report.errors)

    def test_missing_fields(self, validator):
        """Test records without times are errors."""
        report = validator.validate([make_record("f1", None, 2.0)])

        assert report.error_count == 1
        assert report.errors[0].kind == "missing_field"
        assert "start_time" in report.errors[0].message

    def test_unsorted_input(self, validator):
        """Test records are checked in time order regardless of input order."""
        records = [
            make_record("f2", 2.0, 4.0),
            make_record("f1", 0.0, 2.0),
        ]

        assert validator.validate(records).warning_count == 0

    def test_excluded_records_ignored(self, validator):
        """Test zero-duration exclusion markers are not validated."""
        records = [
            make_record("f1", 0.0, 2.0),
            make_record("toc1", 0.0, 0.0, should_read=False),
        ]

        report = validator.validate(records)

        assert report.is_valid
        assert report.warning_count == 0

    def test_records_not_modified(self, validator):
        """Test validation leaves records untouched."""
        record = make_record("f1", 0.0, 5.0)
        validator.validate([record], audio_duration=4.0)

        assert record.end_time == 5.0
