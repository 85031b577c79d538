"""
epubsync: audio/text synchronization for EPUB3 media overlays

Computes a time range for every text fragment of XHTML pages against a
narration track (forced alignment, AI-estimated timestamps or linear
spread), validates and stores the timeline, and emits SMIL documents.
"""

__version__ = "0.1.0"
__author__ = "epubsync Contributors"
__license__ = "MIT"

from .cli import main as cli_main
from .concurrency import JobConcurrencyGate
from .config import CircuitBreakerConfig, RateLimitConfig, SyncConfig
from .emitter import MediaOverlayEmitter
from .extractor import ExtractionResult, FragmentExtractor, extract_fragments
from .forced import AeneasBackend, ForcedAlignmentAdapter, SilenceRefiner, WhisperXBackend
from .linear import LinearSpreadAllocator, estimate_page_windows
from .models import (
    AlignmentCandidate,
    AlignmentRunResult,
    AlignmentSource,
    CandidateStatus,
    Granularity,
    JobContext,
    PageInput,
    SyncRecord,
    SyncReport,
    TextFragment,
    ValidationIssue,
    ValidationReport,
)
from .orchestrator import (
    AlignmentOrchestrator,
    AlignmentStrategy,
    ForcedAlignmentStrategy,
    LinearSpreadStrategy,
    SemanticAlignmentStrategy,
    StrategyResult,
    build_orchestrator,
)
from .pipeline import SyncPipeline
from .ratelimit import CircuitBreaker, CircuitState, ExternalCallGate, RateLimiter
from .semantic import SemanticAlignmentAdapter
from .store import SyncStore
from .utils import (
    AlignmentUnavailable,
    AudioLoadError,
    CircuitOpenError,
    EpubSyncError,
    ExtractionError,
    JobCancelledError,
    MalformedResponseError,
    RateLimitedError,
    StorageError,
    SyncValidationError,
    clock_value_to_seconds,
    seconds_to_clock_value,
)
from .validator import SyncValidator

__all__ = [
    "__version__",
    "seconds_to_clock_value",
    "clock_value_to_seconds",
    "EpubSyncError",
    "AlignmentUnavailable",
    "RateLimitedError",
    "CircuitOpenError",
    "MalformedResponseError",
    "SyncValidationError",
    "StorageError",
    "AudioLoadError",
    "ExtractionError",
    "JobCancelledError",
    "Granularity",
    "AlignmentSource",
    "CandidateStatus",
    "TextFragment",
    "AlignmentCandidate",
    "SyncRecord",
    "ValidationIssue",
    "ValidationReport",
    "PageInput",
    "JobContext",
    "AlignmentRunResult",
    "SyncReport",
    "SyncConfig",
    "RateLimitConfig",
    "CircuitBreakerConfig",
    "FragmentExtractor",
    "ExtractionResult",
    "extract_fragments",
    "LinearSpreadAllocator",
    "estimate_page_windows",
    "ForcedAlignmentAdapter",
    "AeneasBackend",
    "WhisperXBackend",
    "SilenceRefiner",
    "SemanticAlignmentAdapter",
    "RateLimiter",
    "CircuitBreaker",
    "CircuitState",
    "ExternalCallGate",
    "JobConcurrencyGate",
    "AlignmentOrchestrator",
    "AlignmentStrategy",
    "StrategyResult",
    "ForcedAlignmentStrategy",
    "SemanticAlignmentStrategy",
    "LinearSpreadStrategy",
    "build_orchestrator",
    "SyncValidator",
    "SyncStore",
    "MediaOverlayEmitter",
    "SyncPipeline",
    "cli_main",
]
