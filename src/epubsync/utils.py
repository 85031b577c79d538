"""
Utility functions for epubsync.

Includes text normalization, fragment id helpers, clock value conversion,
logging setup, and custom exception classes.
"""

import logging
import os
import re
import sys
from typing import Optional, Tuple


# ============================================================================
# Custom Exception Classes
# ============================================================================


class EpubSyncError(Exception):
    """Base exception for all epubsync errors."""

    pass


class AlignmentUnavailable(EpubSyncError):
    """Raised when an alignment strategy cannot run or failed as a whole.

    Always recoverable: the orchestrator falls back to the next strategy.
    """

    pass


class RateLimitedError(AlignmentUnavailable):
    """Raised when an external call was rate limited and retries are exhausted."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class CircuitOpenError(RateLimitedError):
    """Raised when the circuit breaker rejects a call during its cooldown."""

    pass


class MalformedResponseError(EpubSyncError):
    """Raised when an external service returned unparsable or incomplete data."""

    pass


class SyncValidationError(EpubSyncError):
    """Raised when a timeline fails validation and cannot be persisted."""

    pass


class StorageError(EpubSyncError):
    """Raised when persisting or reading sync records fails."""

    pass


class AudioLoadError(EpubSyncError):
    """Raised when audio file cannot be loaded."""

    pass


class ExtractionError(EpubSyncError):
    """Raised when XHTML content cannot be parsed into fragments."""

    pass


class JobCancelledError(EpubSyncError):
    """Raised when a job was cancelled between suspension points."""

    pass


# ============================================================================
# Text Normalization
# ============================================================================


def normalize_text(text: str, lowercase: bool = True, remove_punctuation: bool = False) -> str:
    """
    Normalize text for matching and comparison.

    Args:
        text: Input text to normalize
        lowercase: Convert to lowercase if True
        remove_punctuation: Remove punctuation if True

    Returns:
        Normalized text string

    Example:
        >>> normalize_text("Hello, World!")
        'hello, world!'
        >>> normalize_text("Hello, World!", remove_punctuation=True)
        'hello world'
    """
    text = re.sub(r"\s+", " ", text)
    text = text.strip()

    if lowercase:
        text = text.lower()

    if remove_punctuation:
        text = re.sub(r"[^\w\s]", "", text)
        text = re.sub(r"\s+", " ", text).strip()

    return text


def normalize_for_matching(text: str) -> str:
    """
    Aggressive normalization used when comparing aligner output to source text.

    Example:
        >>> normalize_for_matching("  Hello, WORLD!!  ")
        'hello world'
    """
    return normalize_text(text, lowercase=True, remove_punctuation=True)


def clean_text_for_alignment(text: str) -> str:
    """
    Clean a fragment text before handing it to an aligner.

    Collapses whitespace, strips a leading BOM and replaces typographic
    quotes and dashes that trip up phonetic aligners.

    Example:
        >>> clean_text_for_alignment(" \u201cHi\u201d \u2014 there ")
        '"Hi" there'
    """
    text = text.replace("\ufeff", "")
    text = text.replace("\u201c", '"').replace("\u201d", '"')
    text = text.replace("\u2018", "'").replace("\u2019", "'")
    text = text.replace("`", "'")
    text = text.replace("\u2014", " ").replace("\u2013", " ")
    text = re.sub(r"\s+", " ", text)
    return text.strip()


# ============================================================================
# Fragment Id Helpers
# ============================================================================

# page4_p1_s1_w2, or the legacy p1_s1_w2 without a page prefix
FRAGMENT_ID_PATTERN = re.compile(r"^(?:page(\d+)_)?p\d+(?:_s\d+)?(?:_w\d+)?$")
PAGE_PREFIX_PATTERN = re.compile(r"^page(\d+)_")


def is_fragment_id(value: Optional[str]) -> bool:
    """Check whether an id follows the hierarchical fragment id scheme."""
    return bool(value) and FRAGMENT_ID_PATTERN.match(value) is not None


def page_number_from_id(fragment_id: str, default: Optional[int] = None) -> Optional[int]:
    """
    Read the page number encoded in a fragment id prefix.

    Example:
        >>> page_number_from_id("page4_p1_s1_w2")
        4
        >>> page_number_from_id("p1_s1", default=1)
        1
    """
    match = PAGE_PREFIX_PATTERN.match(fragment_id or "")
    if match:
        return int(match.group(1))
    return default


def granularity_from_id(fragment_id: str) -> str:
    """
    Infer the fragment level from its id.

    Example:
        >>> granularity_from_id("page1_p2_s3_w4")
        'word'
        >>> granularity_from_id("page1_p2")
        'paragraph'
    """
    local = PAGE_PREFIX_PATTERN.sub("", fragment_id or "")
    if re.search(r"_w\d+$", local):
        return "word"
    if re.search(r"_s\d+$", local):
        return "sentence"
    return "paragraph"


def is_descendant_id(child_id: str, parent_id: str) -> bool:
    """
    Check the hierarchical id namespace: a word id extends its sentence id.

    Example:
        >>> is_descendant_id("page1_p1_s1_w2", "page1_p1")
        True
        >>> is_descendant_id("page1_p10_s1", "page1_p1")
        False
    """
    return child_id.startswith(parent_id + "_")


def fragment_sort_key(fragment_id: str) -> Tuple[int, ...]:
    """
    Natural document order key for hierarchical ids.

    Numbers are compared numerically so p10 sorts after p9, and a
    container sorts before the words it contains.
    """
    return tuple(int(n) for n in re.findall(r"\d+", fragment_id or ""))


# ============================================================================
# Clock Value Utilities
# ============================================================================


def seconds_to_clock_value(seconds: float) -> str:
    """
    Convert seconds to a SMIL full clock value (HH:MM:SS.mmm).

    Rounds to the nearest millisecond first, so carries propagate
    into seconds and minutes instead of producing ".1000".

    Example:
        >>> seconds_to_clock_value(90.5)
        '00:01:30.500'
        >>> seconds_to_clock_value(3661.234)
        '01:01:01.234'
    """
    if seconds < 0:
        raise ValueError(f"Clock value cannot be negative: {seconds}")

    total_ms = int(round(seconds * 1000))
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, milliseconds = divmod(remainder, 1000)

    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{milliseconds:03d}"


def clock_value_to_seconds(value: str) -> float:
    """
    Convert a SMIL clock value to seconds.

    Accepts full clock values (HH:MM:SS.mmm), partial clock values (MM:SS.mmm)
    and timecount values ("12.345s", "1500ms").

    Example:
        >>> clock_value_to_seconds('00:01:30.500')
        90.5
        >>> clock_value_to_seconds('2.345s')
        2.345
    """
    value = value.strip()

    if value.endswith("ms"):
        return round(float(value[:-2]) / 1000.0, 3)
    if value.endswith("s") and ":" not in value:
        return round(float(value[:-1]), 3)

    parts = value.split(":")
    if len(parts) == 3:
        hours, minutes, seconds = int(parts[0]), int(parts[1]), float(parts[2])
    elif len(parts) == 2:
        hours, minutes, seconds = 0, int(parts[0]), float(parts[1])
    else:
        return round(float(value), 3)

    return round(hours * 3600 + minutes * 60 + seconds, 3)


def round_time(seconds: float) -> float:
    """Round a time value to millisecond precision."""
    return round(seconds, 3)


def format_duration(seconds: float) -> str:
    """
    Render a duration as "1h 2m 3s", omitting empty units.

    Example:
        >>> format_duration(90)
        '1m 30s'
        >>> format_duration(3661)
        '1h 1m 1s'
    """
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)

    units = [(hours, "h"), (minutes, "m"), (secs, "s")]
    rendered = [f"{amount}{unit}" for amount, unit in units if amount > 0]
    return " ".join(rendered) if rendered else "0s"


# ============================================================================
# Logging Configuration
# ============================================================================

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that log every request or statement at INFO/DEBUG
NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger for a synchronization run.

    Console output goes to stderr so the CLI summary on stdout stays clean.
    A log file, when given, always receives DEBUG records.

    Args:
        verbose: Log DEBUG records to the console instead of INFO
        log_file: Optional path of a log file

    Returns:
        The "epubsync" package logger
    """
    level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = [logging.StreamHandler(sys.stderr)]
    handlers[0].setLevel(level)
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        handlers[1].setLevel(logging.DEBUG)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if log_file else level)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    package_logger = logging.getLogger("epubsync")
    package_logger.setLevel(logging.DEBUG if log_file else level)
    return package_logger


def get_logger(name: str) -> logging.Logger:
    """Return the logger of an epubsync module, namespaced under "epubsync"."""
    if name.startswith("epubsync"):
        return logging.getLogger(name)
    return logging.getLogger(f"epubsync.{name}")


# ============================================================================
# File Helpers
# ============================================================================


def validate_file_exists(file_path: str) -> bool:
    """Return True when the path points to an existing regular file."""
    return os.path.isfile(file_path)


def get_file_size_mb(file_path: str) -> float:
    """Size of a file in megabytes, rounded to two decimals."""
    return round(os.path.getsize(file_path) / (1024 * 1024), 2)
