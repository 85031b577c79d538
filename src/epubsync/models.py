"""
Data model for epubsync.

Fragments, alignment candidates, persisted sync records and validation
reports shared by every stage of the synchronization pipeline.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Set


class Granularity(str, Enum):
    """Fragment level at which synchronization is expressed."""

    WORD = "word"
    SENTENCE = "sentence"
    PARAGRAPH = "paragraph"


class AlignmentSource(str, Enum):
    """Strategy that produced a candidate."""

    FORCED_ALIGNMENT = "forced_alignment"
    LINEAR_SPREAD = "linear_spread"
    SEMANTIC_AI = "semantic_ai"


class CandidateStatus(str, Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TextFragment:
    """One syncable unit of readable text."""

    id: str
    text: str
    granularity: Granularity
    page_number: int
    order: int

    @property
    def char_count(self) -> int:
        return len(self.text)


@dataclass
class AlignmentCandidate:
    """
    A proposed time range for one fragment from one strategy.

    Skipped candidates carry no time range. `reason` is None when the
    skip is a genuine "not spoken" verdict, or a short code when the
    skip was imposed by failure handling (those are never persisted
    as exclusions).
    """

    fragment_id: str
    page_number: int
    source: AlignmentSource
    status: CandidateStatus = CandidateStatus.SYNCED
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    text: str = ""
    reason: Optional[str] = None

    @property
    def is_synced(self) -> bool:
        return self.status == CandidateStatus.SYNCED

    @property
    def is_verdict_skip(self) -> bool:
        """True when the fragment was judged unspoken, not dropped by an error."""
        return self.status == CandidateStatus.SKIPPED and self.reason is None

    @property
    def duration(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return self.end_time - self.start_time

    @classmethod
    def skipped(
        cls,
        fragment: TextFragment,
        source: AlignmentSource,
        reason: Optional[str] = None,
    ) -> "AlignmentCandidate":
        return cls(
            fragment_id=fragment.id,
            page_number=fragment.page_number,
            source=source,
            status=CandidateStatus.SKIPPED,
            text=fragment.text,
            reason=reason,
        )


EXCLUDED_NOTE = "[excluded]"


@dataclass
class SyncRecord:
    """Persisted sync entry, one per (conversion_job_id, page_number, block_id)."""

    pdf_document_id: Optional[int]
    conversion_job_id: int
    block_id: str
    page_number: int
    start_time: Optional[float]
    end_time: Optional[float]
    audio_file_path: str = ""
    custom_text: Optional[str] = None
    is_custom_segment: bool = False
    notes: Optional[str] = None
    should_read: bool = True
    id: Optional[int] = None

    @property
    def key(self):
        return (self.conversion_job_id, self.page_number, self.block_id)

    def with_times(self, start_time: float, end_time: float) -> "SyncRecord":
        return replace(self, start_time=start_time, end_time=end_time)

    def to_dict(self) -> Dict:
        """camelCase view used by review UIs and packaging."""
        return {
            "id": self.id,
            "pdfDocumentId": self.pdf_document_id,
            "conversionJobId": self.conversion_job_id,
            "pageNumber": self.page_number,
            "blockId": self.block_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "audioFilePath": self.audio_file_path,
            "notes": self.notes,
            "customText": self.custom_text,
            "isCustomSegment": self.is_custom_segment,
            "shouldRead": self.should_read,
        }


@dataclass
class ValidationIssue:
    fragment_id: Optional[str]
    kind: str
    message: str
    neighbor_fragment_id: Optional[str] = None


@dataclass
class ValidationReport:
    """Errors block persistence of the offending record; warnings are informational."""

    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    def rejected_ids(self) -> Set[str]:
        return {issue.fragment_id for issue in self.errors if issue.fragment_id}

    def merge(self, other: "ValidationReport") -> "ValidationReport":
        return ValidationReport(
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
        )


@dataclass
class PageInput:
    """One XHTML content document of the job."""

    page_number: int
    xhtml: str
    xhtml_filename: Optional[str] = None

    @property
    def filename(self) -> str:
        return self.xhtml_filename or f"page_{self.page_number}.xhtml"


@dataclass
class JobContext:
    """Everything one orchestration run needs to know about a conversion job."""

    job_id: int
    audio_path: str
    audio_duration: float
    pages: List[PageInput]
    pdf_document_id: Optional[int] = None
    granularity: Granularity = Granularity.SENTENCE
    propagate_words: bool = True
    disable_default_exclusions: bool = False
    exclude_ids: Set[str] = field(default_factory=set)
    language: str = "eng"
    is_cancelled: Callable[[], bool] = lambda: False


@dataclass
class AlignmentRunResult:
    """Merged output of one orchestration run."""

    candidates: List[AlignmentCandidate]
    strategy_used: AlignmentSource
    warnings: List[str] = field(default_factory=list)
    fallback_pages: List[int] = field(default_factory=list)
    live_ids: Set[str] = field(default_factory=set)
    excluded_ids: Set[str] = field(default_factory=set)

    @property
    def synced(self) -> List[AlignmentCandidate]:
        return [c for c in self.candidates if c.is_synced]

    @property
    def skipped(self) -> List[AlignmentCandidate]:
        return [c for c in self.candidates if not c.is_synced]


@dataclass
class SyncReport:
    """User-visible summary of a completed alignment run."""

    job_id: int
    strategy_used: AlignmentSource
    persisted: int
    excluded: int
    pruned: int
    rejected: int
    validation: ValidationReport
    warnings: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.strategy_used == AlignmentSource.LINEAR_SPREAD
