"""
End-to-end synchronization pipeline for epubsync.

orchestrate -> validate -> persist (upsert, exclusion markers, prune)
-> report. Used by the CLI and by upstream document services.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config import SyncConfig
from .emitter import MediaOverlayEmitter
from .models import (
    AlignmentCandidate,
    AlignmentRunResult,
    JobContext,
    SyncRecord,
    SyncReport,
    ValidationReport,
)
from .orchestrator import AlignmentOrchestrator, build_orchestrator, check_cancelled
from .ratelimit import CircuitBreaker, ExternalCallGate, RateLimiter
from .store import SyncStore
from .utils import get_logger, granularity_from_id
from .validator import SyncValidator

logger = get_logger(__name__)


def _within(fragment_id: str, ids: set) -> bool:
    """True if the id or one of its hierarchical ancestors is in ids."""
    if not ids:
        return False
    parts = fragment_id.split("_")
    return any("_".join(parts[:i]) in ids for i in range(1, len(parts) + 1))


class SyncPipeline:
    """
    Runs alignment for a job and persists the validated timeline.

    Args:
        orchestrator: Strategy chain
        store: Sync record store
        validator: Timeline validator
        emitter: Media overlay emitter used by write_overlays
    """

    def __init__(
        self,
        orchestrator: AlignmentOrchestrator,
        store: SyncStore,
        validator: Optional[SyncValidator] = None,
        emitter: Optional[MediaOverlayEmitter] = None,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.validator = validator or SyncValidator()
        self.emitter = emitter or MediaOverlayEmitter()

        if self.orchestrator.store is None:
            self.orchestrator.store = store

    @classmethod
    def from_config(cls, config: Optional[SyncConfig] = None, client=None) -> "SyncPipeline":
        """
        Build the pipeline with process-wide admission control.

        Args:
            config: SyncConfig (default: SyncConfig.from_env())
            client: Optional httpx.AsyncClient for the semantic adapter
        """
        config = config or SyncConfig.from_env()
        gate = ExternalCallGate(
            RateLimiter(config.rate_limit),
            CircuitBreaker(config.circuit_breaker),
            max_retries=config.semantic_max_retries,
        )
        store = SyncStore(config.database_url)
        orchestrator = build_orchestrator(config, gate=gate, store=store, client=client)
        return cls(orchestrator, store, validator=SyncValidator(gap_threshold=config.gap_threshold))

    async def aclose(self):
        """Release HTTP clients held by strategies and dispose the store engine."""
        for strategy in self.orchestrator.strategies:
            adapter = getattr(strategy, "adapter", None)
            if adapter is not None and hasattr(adapter, "aclose"):
                await adapter.aclose()
        self.store.close()

    @staticmethod
    def to_records(job: JobContext, candidates: Sequence[AlignmentCandidate]) -> List[SyncRecord]:
        return [
            SyncRecord(
                pdf_document_id=job.pdf_document_id,
                conversion_job_id=job.job_id,
                block_id=c.fragment_id,
                page_number=c.page_number,
                start_time=c.start_time,
                end_time=c.end_time,
                audio_file_path=job.audio_path,
                custom_text=c.text or None,
                notes=f"source={c.source.value}",
            )
            for c in candidates
            if c.is_synced
        ]

    def validate(self, records: Sequence[SyncRecord], audio_duration: Optional[float]) -> ValidationReport:
        """
        Validate each fragment level on its own.

        Propagated words sit inside their sentences by construction, so
        mixing levels would report every word as an overlap.
        """
        levels: Dict[str, List[SyncRecord]] = {}
        for record in records:
            levels.setdefault(granularity_from_id(record.block_id), []).append(record)

        report = ValidationReport()
        for level in sorted(levels):
            report = report.merge(self.validator.validate(levels[level], audio_duration))
        return report

    async def run_job(self, job: JobContext) -> SyncReport:
        """
        Align, validate and persist one job.

        Records with validation errors (and the words inside them) are
        not persisted; everything else is. Genuine "skipped" verdicts are
        stored as exclusion markers, and records whose fragments no
        longer exist are pruned.

        Raises:
            StorageError: If persistence fails
            JobCancelledError: If the job is cancelled before persistence
        """
        result: AlignmentRunResult = await self.orchestrator.run(job)
        check_cancelled(job)

        records = self.to_records(job, result.candidates)
        validation = self.validate(records, job.audio_duration)

        rejected = validation.rejected_ids()
        valid = [r for r in records if not _within(r.block_id, rejected)]

        verdict_skips = [c for c in result.candidates if c.is_verdict_skip]

        check_cancelled(job)
        persisted = self.store.upsert(job.job_id, valid)
        excluded = self.store.mark_excluded(
            job.job_id,
            [c.fragment_id for c in verdict_skips],
            page_numbers={c.fragment_id: c.page_number for c in verdict_skips},
            pdf_document_id=job.pdf_document_id,
            audio_file_path=job.audio_path,
            texts={c.fragment_id: c.text for c in verdict_skips},
            reason=f"source={result.strategy_used.value}",
        )
        pruned = 0
        if result.live_ids:
            # Fragments excluded this run lose any timing stored by earlier runs
            dropped = result.excluded_ids - self.store.excluded_ids(job.job_id)
            skipped_ids = {c.fragment_id for c in verdict_skips}
            live = {
                i for i in result.live_ids
                if not _within(i, dropped) and (i in skipped_ids or not _within(i, skipped_ids))
            }
            pruned = self.store.prune_stale(job.job_id, live)

        report = SyncReport(
            job_id=job.job_id,
            strategy_used=result.strategy_used,
            persisted=persisted,
            excluded=excluded,
            pruned=pruned,
            rejected=len(records) - len(valid),
            validation=validation,
            warnings=list(result.warnings),
        )

        logger.info(
            f"Job {job.job_id} complete: strategy={report.strategy_used.value}, "
            f"persisted={persisted}, excluded={excluded}, pruned={pruned}, rejected={report.rejected}, "
            f"validation errors={validation.error_count}, warnings={validation.warning_count}"
        )
        return report

    def emit(self, job_id: int, page_filenames: Optional[Dict[int, str]] = None) -> str:
        """Render the job's stored timeline as one SMIL document."""
        return self.emitter.emit(job_id, self.store.list_by_job(job_id), page_filenames)

    def write_overlays(
        self,
        job_id: int,
        output_dir: str,
        page_filenames: Optional[Dict[int, str]] = None,
        audio_src: Optional[str] = None,
    ) -> List[Path]:
        """Write one SMIL file per page from the job's stored timeline."""
        return self.emitter.write(
            job_id,
            self.store.list_by_job(job_id),
            output_dir,
            page_filenames=page_filenames,
            audio_src=audio_src,
        )
