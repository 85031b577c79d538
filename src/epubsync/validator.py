"""
Timeline validation module for epubsync.

Checks sync records for internal consistency before they are
persisted. Errors block persistence of the offending record only;
warnings are surfaced to the caller and never block.
"""

from typing import List, Optional, Sequence

from .models import SyncRecord, ValidationIssue, ValidationReport
from .utils import get_logger

logger = get_logger(__name__)


class SyncValidator:
    """
    Validates a candidate timeline.

    Rules, checked on records sorted by start time:
    - error: missing block id, page number, start or end
    - error: end <= start
    - error: end past the audio duration (when known)
    - warning: a record overlaps the next one
    - warning: silence between consecutive records exceeds gap_threshold
    """

    def __init__(self, gap_threshold: float = 0.5):
        self.gap_threshold = gap_threshold

    @staticmethod
    def _missing_fields(record: SyncRecord) -> List[str]:
        missing = []
        if not record.block_id:
            missing.append("block_id")
        if record.page_number is None:
            missing.append("page_number")
        if record.start_time is None:
            missing.append("start_time")
        if record.end_time is None:
            missing.append("end_time")
        return missing

    def validate(
        self,
        records: Sequence[SyncRecord],
        audio_duration: Optional[float] = None,
    ) -> ValidationReport:
        """
        Validate records without modifying them.

        Args:
            records: Sync records of one job (any order)
            audio_duration: Track duration in seconds, or None if unknown

        Returns:
            ValidationReport with errors and warnings
        """
        report = ValidationReport()
        timed = []

        for record in records:
            if not record.should_read:
                continue

            missing = self._missing_fields(record)
            if missing:
                report.errors.append(
                    ValidationIssue(
                        fragment_id=record.block_id or None,
                        kind="missing_field",
                        message=f"Missing required fields: {', '.join(missing)}",
                    )
                )
                continue

            if record.end_time <= record.start_time:
                report.errors.append(
                    ValidationIssue(
                        fragment_id=record.block_id,
                        kind="invalid_range",
                        message=f"End time ({record.end_time:.3f}s) must be after start time ({record.start_time:.3f}s)",
                    )
                )
                continue

            if audio_duration is not None and record.end_time > audio_duration:
                report.errors.append(
                    ValidationIssue(
                        fragment_id=record.block_id,
                        kind="exceeds_duration",
                        message=f"End time ({record.end_time:.3f}s) exceeds audio duration ({audio_duration:.3f}s)",
                    )
                )
                continue

            timed.append(record)

        timed.sort(key=lambda r: (r.start_time, r.end_time))
        for current, following in zip(timed, timed[1:]):
            if current.end_time > following.start_time:
                report.warnings.append(
                    ValidationIssue(
                        fragment_id=current.block_id,
                        neighbor_fragment_id=following.block_id,
                        kind="overlap",
                        message=(
                            f"{current.block_id} ends at {current.end_time:.3f}s after "
                            f"{following.block_id} starts at {following.start_time:.3f}s"
                        ),
                    )
                )
            elif following.start_time - current.end_time > self.gap_threshold:
                gap = following.start_time - current.end_time
                report.warnings.append(
                    ValidationIssue(
                        fragment_id=current.block_id,
                        neighbor_fragment_id=following.block_id,
                        kind="gap",
                        message=f"{gap:.3f}s gap between {current.block_id} and {following.block_id}",
                    )
                )

        if report.errors:
            logger.warning(f"Validation: {report.error_count} errors, {report.warning_count} warnings")
        else:
            logger.info(f"Validation passed with {report.warning_count} warnings")

        return report
