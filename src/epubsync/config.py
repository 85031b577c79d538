"""
Configuration for epubsync.

Defaults can be overridden from environment variables via
`SyncConfig.from_env()`; the CLI overrides them again from its options.

Environment Variables:
    GEMINI_API_KEY: API key for the semantic alignment strategy
    GEMINI_MODEL: Model name (default: gemini-2.5-flash)
    GEMINI_RATE_LIMIT_PER_MINUTE: Max requests per minute (default: 50)
    GEMINI_RATE_LIMIT_PER_HOUR: Max requests per hour (default: 3000)
    GEMINI_MIN_INTERVAL_MS: Minimum interval between requests (default: 1000)
    EPUBSYNC_MAX_CONCURRENT_JOBS: Jobs allowed inside the orchestrator (default: 2)
    EPUBSYNC_DATABASE_URL: SQLAlchemy URL for sync records
    EPUBSYNC_FORCED_BACKEND: "aeneas", "whisperx" or "none" (default: aeneas)
    EPUBSYNC_FORCED_TIMEOUT: Forced aligner timeout in seconds (default: 600)
    EPUBSYNC_AENEAS_PYTHON: Interpreter that has aeneas installed
    EPUBSYNC_WHISPERX_DEVICE: "auto", "cuda" or "cpu" (default: auto)
    EPUBSYNC_SILENCE_REFINEMENT: Snap forced boundaries to pauses (default: off)
    EPUBSYNC_SILENCE_THRESHOLD_DB: Silence level in dBFS (default: -40)
    EPUBSYNC_SILENCE_MIN_DURATION: Shortest pause in seconds (default: 0.1)
    EPUBSYNC_SEMANTIC_TIMEOUT: Semantic call timeout in seconds (default: 300)
    EPUBSYNC_GAP_THRESHOLD: Gap warning threshold in seconds (default: 0.5)
    EPUBSYNC_CIRCUIT_BREAKER_THRESHOLD: Quota failures before opening (default: 5)
    EPUBSYNC_CIRCUIT_BREAKER_COOLDOWN: Seconds the circuit stays open (default: 60)
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


@dataclass
class RateLimitConfig:
    """Admission limits for external calls."""

    requests_per_minute: int = 50
    requests_per_hour: int = 3000
    min_interval_seconds: float = 1.0
    max_wait_seconds: float = 120.0


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5  # consecutive quota failures before opening
    success_threshold: int = 2  # half-open successes before closing
    cooldown_seconds: float = 60.0
    half_open_max_attempts: int = 3


@dataclass
class SyncConfig:
    """Top-level configuration for a synchronization run."""

    database_url: str = "sqlite:///epubsync.db"
    max_concurrent_jobs: int = 2

    forced_backend: str = "aeneas"
    forced_timeout: float = 600.0
    aeneas_python: Optional[str] = None
    whisperx_device: str = "auto"
    silence_refinement: bool = False
    silence_threshold_db: float = -40.0
    silence_min_duration: float = 0.1
    silence_snap_window: float = 0.2

    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    semantic_timeout: float = 300.0
    semantic_max_retries: int = 2
    inline_audio_limit_mb: float = 18.0  # base64 payload; requests are capped at 20MB

    gap_threshold: float = 0.5

    rate_limit: RateLimitConfig = None
    circuit_breaker: CircuitBreakerConfig = None

    def __post_init__(self):
        if self.rate_limit is None:
            self.rate_limit = RateLimitConfig()
        if self.circuit_breaker is None:
            self.circuit_breaker = CircuitBreakerConfig()

    @property
    def semantic_enabled(self) -> bool:
        return bool(self.gemini_api_key)

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Build a configuration from environment variables."""
        per_minute = _env_int("GEMINI_RATE_LIMIT_PER_MINUTE", 50)
        min_interval_ms = _env_int("GEMINI_MIN_INTERVAL_MS", 1000)
        if min_interval_ms < 100:
            # Derive the interval from the per-minute budget
            min_interval_ms = max(100, 60000 // max(per_minute, 1))

        return cls(
            database_url=os.getenv("EPUBSYNC_DATABASE_URL", "sqlite:///epubsync.db"),
            max_concurrent_jobs=_env_int("EPUBSYNC_MAX_CONCURRENT_JOBS", 2),
            forced_backend=os.getenv("EPUBSYNC_FORCED_BACKEND", "aeneas").lower(),
            forced_timeout=_env_float("EPUBSYNC_FORCED_TIMEOUT", 600.0),
            aeneas_python=os.getenv("EPUBSYNC_AENEAS_PYTHON") or None,
            whisperx_device=os.getenv("EPUBSYNC_WHISPERX_DEVICE", "auto"),
            silence_refinement=os.getenv("EPUBSYNC_SILENCE_REFINEMENT", "").lower() in ("1", "true", "yes"),
            silence_threshold_db=_env_float("EPUBSYNC_SILENCE_THRESHOLD_DB", -40.0),
            silence_min_duration=_env_float("EPUBSYNC_SILENCE_MIN_DURATION", 0.1),
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
            semantic_timeout=_env_float("EPUBSYNC_SEMANTIC_TIMEOUT", 300.0),
            gap_threshold=_env_float("EPUBSYNC_GAP_THRESHOLD", 0.5),
            rate_limit=RateLimitConfig(
                requests_per_minute=per_minute,
                requests_per_hour=_env_int("GEMINI_RATE_LIMIT_PER_HOUR", 3000),
                min_interval_seconds=min_interval_ms / 1000.0,
            ),
            circuit_breaker=CircuitBreakerConfig(
                failure_threshold=_env_int("EPUBSYNC_CIRCUIT_BREAKER_THRESHOLD", 5),
                cooldown_seconds=_env_float("EPUBSYNC_CIRCUIT_BREAKER_COOLDOWN", 60.0),
            ),
        )
