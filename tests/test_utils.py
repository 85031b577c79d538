"""
Unit tests for utility functions.
"""

import pytest

from epubsync.utils import (
    AlignmentUnavailable,
    CircuitOpenError,
    EpubSyncError,
    RateLimitedError,
    clean_text_for_alignment,
    clock_value_to_seconds,
    format_duration,
    fragment_sort_key,
    granularity_from_id,
    is_descendant_id,
    is_fragment_id,
    normalize_for_matching,
    normalize_text,
    page_number_from_id,
    seconds_to_clock_value,
)


class TestTextNormalization:
    """Tests for text normalization functions."""

    def test_normalize_text_basic(self):
        """Test basic text normalization."""
        assert normalize_text("Hello World") == "hello world"
        assert normalize_text("  Multiple   Spaces  ") == "multiple spaces"

    def test_normalize_text_with_punctuation(self):
        """Test normalization with punctuation removal."""
        assert normalize_text("Hello, World! How are you?", remove_punctuation=True) == "hello world how are you"

    def test_normalize_for_matching(self):
        """Test aggressive normalization for matching."""
        assert normalize_for_matching("  Hello, WORLD!!  ") == "hello world"

    def test_clean_text_for_alignment(self):
        """Test typographic characters are replaced for aligners."""
        assert clean_text_for_alignment("\ufeff\u201cHi\u201d \u2014 it\u2019s  me") == "\"Hi\" it's me"


class TestFragmentIds:
    """Tests for hierarchical fragment id helpers."""

    def test_is_fragment_id(self):
        """Test recognized id shapes."""
        assert is_fragment_id("page4_p1_s1_w2")
        assert is_fragment_id("p1_s1")
        assert not is_fragment_id("toc")
        assert not is_fragment_id("")
        assert not is_fragment_id(None)

    def test_page_number_from_id(self):
        """Test page prefix parsing with default."""
        assert page_number_from_id("page12_p1") == 12
        assert page_number_from_id("p1_s1") is None
        assert page_number_from_id("p1_s1", default=3) == 3

    def test_granularity_from_id(self):
        """Test level inference from the id suffix."""
        assert granularity_from_id("page1_p2_s3_w4") == "word"
        assert granularity_from_id("page1_p2_s3") == "sentence"
        assert granularity_from_id("page1_p2") == "paragraph"

    def test_is_descendant_id(self):
        """Test prefix containment does not confuse p1 with p10."""
        assert is_descendant_id("page1_p1_s1_w2", "page1_p1_s1")
        assert is_descendant_id("page1_p1_s1_w2", "page1_p1")
        assert not is_descendant_id("page1_p10_s1", "page1_p1")
        assert not is_descendant_id("page1_p1", "page1_p1")

    def test_fragment_sort_key_natural_order(self):
        """Test numeric ordering of ids."""
        ids = ["page1_p10", "page1_p2_s1", "page1_p2", "page1_p9"]
        assert sorted(ids, key=fragment_sort_key) == ["page1_p2", "page1_p2_s1", "page1_p9", "page1_p10"]


class TestClockValues:
    """Tests for SMIL clock value conversion."""

    def test_seconds_to_clock_value(self):
        """Test full clock value formatting."""
        assert seconds_to_clock_value(0) == "00:00:00.000"
        assert seconds_to_clock_value(90.5) == "00:01:30.500"
        assert seconds_to_clock_value(3661.234) == "01:01:01.234"

    def test_seconds_to_clock_value_carry(self):
        """Test millisecond rounding carries into seconds."""
        assert seconds_to_clock_value(59.9996) == "00:01:00.000"

    def test_seconds_to_clock_value_negative(self):
        """Test negative values are rejected."""
        with pytest.raises(ValueError):
            seconds_to_clock_value(-1)

    def test_clock_value_to_seconds(self):
        """Test parsing full, partial and timecount values."""
        assert clock_value_to_seconds("00:01:30.500") == 90.5
        assert clock_value_to_seconds("01:30.5") == 90.5
        assert clock_value_to_seconds("2.345s") == 2.345
        assert clock_value_to_seconds("1500ms") == 1.5
        assert clock_value_to_seconds("4.2") == 4.2

    def test_clock_value_round_trip(self):
        """Test conversion both ways preserves milliseconds."""
        for value in (0.0, 1.001, 12.345, 3599.999):
            assert clock_value_to_seconds(seconds_to_clock_value(value)) == value


class TestFormatDuration:
    """Tests for duration formatting."""

    def test_format_duration(self):
        """Test human readable durations."""
        assert format_duration(0) == "0s"
        assert format_duration(90) == "1m 30s"
        assert format_duration(3661) == "1h 1m 1s"


class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_rate_limited_is_recoverable(self):
        """Test rate limit errors are alignment failures with retry info."""
        error = RateLimitedError("quota", retry_after=12.0)
        assert isinstance(error, AlignmentUnavailable)
        assert isinstance(error, EpubSyncError)
        assert error.retry_after == 12.0

    def test_circuit_open_is_rate_limited(self):
        """Test circuit open errors share the rate limit handling path."""
        error = CircuitOpenError("open", retry_after=5.0)
        assert isinstance(error, RateLimitedError)
        assert error.retry_after == 5.0
