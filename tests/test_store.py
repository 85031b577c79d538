"""
Unit tests for sync record persistence.
"""

import pytest

from conftest import make_record
from epubsync.models import EXCLUDED_NOTE
from epubsync.store import SyncStore
from epubsync.utils import StorageError, SyncValidationError


class TestSyncStore:
    """Tests for SyncStore class."""

    @pytest.fixture
    def store(self):
        store = SyncStore("sqlite://")
        yield store
        store.close()

    def test_upsert_and_list(self, store):
        """Test records are stored and listed in document order."""
        store.upsert(1, [
            make_record("page1_p10_s1", 9.0, 10.0),
            make_record("page1_p2_s1", 1.0, 2.0),
            make_record("page2_p1_s1", 20.0, 21.0, page=2),
        ])

        records = store.list_by_job(1)

        assert [r.block_id for r in records] == ["page1_p2_s1", "page1_p10_s1", "page2_p1_s1"]
        assert records[0].id is not None
        assert records[0].pdf_document_id == 7

    def test_upsert_is_idempotent(self, store):
        """Test writing the same batch twice leaves one row per key."""
        batch = [make_record("page1_p1_s1", 0.0, 1.0), make_record("page1_p1_s2", 1.0, 2.0)]

        assert store.upsert(1, batch) == 2
        first = store.list_by_job(1)
        assert store.upsert(1, batch) == 2
        second = store.list_by_job(1)

        assert len(second) == 2
        assert [(r.block_id, r.start_time, r.end_time) for r in first] == [
            (r.block_id, r.start_time, r.end_time) for r in second
        ]

    def test_upsert_replaces_fields(self, store):
        """Test a second write for the same key replaces its values."""
        store.upsert(1, [make_record("page1_p1_s1", 0.0, 1.0, notes="source=linear_spread")])
        store.upsert(1, [make_record("page1_p1_s1", 0.5, 1.5, notes="source=forced_alignment")])

        [record] = store.list_by_job(1)
        assert (record.start_time, record.end_time) == (0.5, 1.5)
        assert record.notes == "source=forced_alignment"

    def test_upsert_dedupes_batch(self, store):
        """Test duplicate keys inside one batch keep the last record."""
        count = store.upsert(1, [make_record("page1_p1_s1", 0.0, 1.0), make_record("page1_p1_s1", 2.0, 3.0)])

        assert count == 1
        assert store.list_by_job(1)[0].start_time == 2.0

    def test_jobs_are_isolated(self, store):
        """Test records of different jobs never mix."""
        store.upsert(1, [make_record("page1_p1_s1", 0.0, 1.0)])
        store.upsert(2, [make_record("page1_p1_s1", 5.0, 6.0, job_id=2)])

        assert store.list_by_job(1)[0].start_time == 0.0
        assert store.list_by_job(2)[0].start_time == 5.0

    def test_prune_stale(self, store):
        """Test records of fragments that no longer exist are deleted."""
        store.upsert(1, [
            make_record("page1_p1_s1", 0.0, 1.0),
            make_record("page1_p1_s2", 1.0, 2.0),
            make_record("page1_p1_s3", 2.0, 3.0),
        ])

        pruned = store.prune_stale(1, {"page1_p1_s1", "page1_p1_s3"})

        assert pruned == 1
        assert [r.block_id for r in store.list_by_job(1)] == ["page1_p1_s1", "page1_p1_s3"]

    def test_mark_excluded(self, store):
        """Test exclusion markers are zero-duration and not readable."""
        count = store.mark_excluded(
            1,
            ["page3_p1", "p2"],
            page_numbers={"p2": 4},
            texts={"page3_p1": "Contents"},
            reason="source=semantic_ai",
        )

        assert count == 2
        records = {r.block_id: r for r in store.list_by_job(1)}
        marker = records["page3_p1"]
        assert marker.page_number == 3
        assert (marker.start_time, marker.end_time) == (0.0, 0.0)
        assert marker.should_read is False
        assert marker.notes.startswith(EXCLUDED_NOTE)
        assert marker.custom_text == "Contents"
        assert records["p2"].page_number == 4
        assert store.excluded_ids(1) == {"page3_p1", "p2"}

    def test_list_without_excluded(self, store):
        """Test excluded markers can be filtered out of listings."""
        store.upsert(1, [make_record("page1_p1_s1", 0.0, 1.0)])
        store.mark_excluded(1, ["page1_p2_s1"])

        assert [r.block_id for r in store.list_by_job(1, include_excluded=False)] == ["page1_p1_s1"]

    def test_mark_excluded_empty(self, store):
        """Test excluding nothing writes nothing."""
        assert store.mark_excluded(1, []) == 0
        assert store.list_by_job(1) == []

    def test_update_record(self, store):
        """Test manual edits of times and text."""
        store.upsert(1, [make_record("page1_p1_s1", 0.0, 1.0)])

        record = store.update_record(1, 1, "page1_p1_s1", end_time=1.25, custom_text="Call me Ishmael.")

        assert record.end_time == 1.25
        assert record.custom_text == "Call me Ishmael."
        assert record.is_custom_segment is True

    def test_update_missing_record(self, store):
        """Test editing a record that does not exist raises."""
        with pytest.raises(StorageError):
            store.update_record(1, 1, "page1_p9_s9", start_time=0.0)

    def test_update_rejects_empty_range(self, store):
        """Test an edit that inverts the range is refused and rolled back."""
        store.upsert(1, [make_record("page1_p1_s1", 0.0, 1.0)])

        with pytest.raises(SyncValidationError):
            store.update_record(1, 1, "page1_p1_s1", start_time=2.0)

        assert store.list_by_job(1)[0].start_time == 0.0

    def test_delete_page_and_job(self, store):
        """Test bulk deletes by page and by job."""
        store.upsert(1, [
            make_record("page1_p1_s1", 0.0, 1.0),
            make_record("page2_p1_s1", 1.0, 2.0, page=2),
        ])

        assert store.delete_page(1, 2) == 1
        assert [r.page_number for r in store.list_by_job(1)] == [1]
        assert store.delete_by_job(1) == 1
        assert store.list_by_job(1) == []

    def test_failed_batch_is_rolled_back(self, store):
        """Test a failing write leaves no partial batch behind."""
        batch = [make_record("page1_p1_s1", 0.0, 1.0), make_record("page1_p1_s2", None, None)]

        with pytest.raises(StorageError):
            store.upsert(1, batch)

        assert store.list_by_job(1) == []
