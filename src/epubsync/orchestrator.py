"""
Alignment orchestration module for epubsync.

Selects an alignment strategy for a job, drives per-page iteration for
the semantic strategy, merges partial results and falls back on
failure. Strategies are tried in a fixed order and the first one that
produces synced candidates wins for the whole job; linear spread is
always last, so a run always ends with a timeline.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple

from .concurrency import JobConcurrencyGate
from .extractor import FragmentExtractor
from .forced import ForcedAlignmentAdapter
from .linear import LinearSpreadAllocator, estimate_page_windows
from .models import (
    AlignmentCandidate,
    AlignmentRunResult,
    AlignmentSource,
    Granularity,
    JobContext,
    PageInput,
    TextFragment,
)
from .semantic import SemanticAlignmentAdapter
from .utils import (
    AlignmentUnavailable,
    JobCancelledError,
    MalformedResponseError,
    RateLimitedError,
    get_logger,
)

logger = get_logger(__name__)


def check_cancelled(job: JobContext):
    """Raise JobCancelledError if the job was cancelled since the last suspension point."""
    if job.is_cancelled():
        raise JobCancelledError(f"Job {job.job_id} was cancelled")


@dataclass
class AlignmentPlan:
    """Fragments prepared once per run and shared by every strategy."""

    pages: Dict[int, PageInput]
    fragments_by_page: Dict[int, List[TextFragment]]
    words_by_page: Dict[int, List[TextFragment]] = field(default_factory=dict)
    page_windows: Dict[int, Tuple[float, float]] = field(default_factory=dict)
    excluded_ids: Set[str] = field(default_factory=set)
    live_ids: Set[str] = field(default_factory=set)

    @property
    def page_numbers(self) -> List[int]:
        return sorted(self.fragments_by_page)

    @property
    def all_fragments(self) -> List[TextFragment]:
        return [f for page in self.page_numbers for f in self.fragments_by_page[page]]


@dataclass
class StrategyResult:
    candidates: List[AlignmentCandidate]
    source: AlignmentSource
    warnings: List[str] = field(default_factory=list)
    fallback_pages: List[int] = field(default_factory=list)

    @property
    def has_synced(self) -> bool:
        return any(c.is_synced for c in self.candidates)


class AlignmentStrategy(Protocol):
    name: str

    async def try_align(self, job: JobContext, plan: AlignmentPlan) -> StrategyResult:
        """Produce candidates or raise AlignmentUnavailable."""
        ...


# ============================================================================
# Strategies
# ============================================================================


class LinearSpreadStrategy:
    """Proportional spread over estimated per-page windows. Never fails."""

    name = "linear_spread"

    def __init__(self, allocator: Optional[LinearSpreadAllocator] = None):
        self.allocator = allocator or LinearSpreadAllocator()

    def align_pages(self, plan: AlignmentPlan, pages: Sequence[int]) -> List[AlignmentCandidate]:
        candidates = []
        for page in pages:
            window = plan.page_windows.get(page)
            fragments = plan.fragments_by_page.get(page, [])
            if not fragments or window is None or window[1] <= window[0]:
                continue
            candidates.extend(self.allocator.allocate(fragments, window[0], window[1]))
        return candidates

    async def try_align(self, job: JobContext, plan: AlignmentPlan) -> StrategyResult:
        candidates = self.align_pages(plan, plan.page_numbers)
        logger.info(f"Linear spread allocated {len(candidates)} fragments over {len(plan.page_windows)} pages")
        return StrategyResult(candidates=candidates, source=AlignmentSource.LINEAR_SPREAD)


class ForcedAlignmentStrategy:
    """Whole-job forced alignment in one aligner call."""

    name = "forced_alignment"

    def __init__(self, adapter: ForcedAlignmentAdapter):
        self.adapter = adapter

    async def try_align(self, job: JobContext, plan: AlignmentPlan) -> StrategyResult:
        if not await self.adapter.is_available():
            raise AlignmentUnavailable("Forced aligner not installed")

        fragments = plan.all_fragments
        if not fragments:
            raise AlignmentUnavailable("No fragments to align")

        candidates = await self.adapter.align(
            job.audio_path, fragments, job.language, audio_duration=job.audio_duration
        )
        check_cancelled(job)
        return StrategyResult(candidates=candidates, source=AlignmentSource.FORCED_ALIGNMENT)


class SemanticAlignmentStrategy:
    """
    Page-by-page semantic alignment.

    Pages run strictly one after another. A failing page is skipped with
    a warning; if the service becomes unavailable (circuit open, rate
    limit exhausted) the remaining pages get linear spread in their
    estimated windows.
    """

    name = "semantic_ai"

    def __init__(self, adapter: Optional[SemanticAlignmentAdapter], linear: Optional[LinearSpreadStrategy] = None):
        self.adapter = adapter
        self.linear = linear or LinearSpreadStrategy()

    async def try_align(self, job: JobContext, plan: AlignmentPlan) -> StrategyResult:
        if self.adapter is None:
            raise AlignmentUnavailable("Semantic alignment is not configured")
        if not self.adapter.gate.available:
            raise AlignmentUnavailable("Semantic alignment circuit is open")

        candidates: List[AlignmentCandidate] = []
        warnings: List[str] = []
        fallback_pages: List[int] = []
        pages = plan.page_numbers

        for index, page in enumerate(pages):
            fragments = plan.fragments_by_page[page]
            if not fragments:
                continue

            try:
                page_candidates = await self.adapter.align_page(
                    plan.pages[page].xhtml,
                    job.audio_path,
                    job.audio_duration,
                    job.granularity,
                    fragments=fragments,
                    page_number=page,
                )
            except RateLimitedError as e:
                fallback_pages = [p for p in pages[index:] if plan.fragments_by_page[p]]
                message = (
                    f"Semantic alignment unavailable from page {page} ({e}); "
                    f"linear spread used for {len(fallback_pages)} remaining pages"
                )
                logger.warning(message)
                warnings.append(message)
                candidates.extend(self.linear.align_pages(plan, fallback_pages))
                break
            except (AlignmentUnavailable, MalformedResponseError) as e:
                check_cancelled(job)
                message = f"Semantic alignment failed for page {page}: {e}"
                logger.warning(message)
                warnings.append(message)
                candidates.extend(
                    AlignmentCandidate.skipped(f, AlignmentSource.SEMANTIC_AI, "page_failed")
                    for f in fragments
                )
                continue

            check_cancelled(job)

            missing = sum(1 for c in page_candidates if c.reason == "missing_verdict")
            if missing:
                warnings.append(f"Page {page}: no verdict for {missing} fragments, marked skipped")
            invalid = sum(1 for c in page_candidates if c.reason == "invalid_verdict")
            if invalid:
                warnings.append(f"Page {page}: {invalid} invalid verdicts, marked skipped")
            candidates.extend(page_candidates)

        semantic_synced = any(
            c.is_synced and c.source == AlignmentSource.SEMANTIC_AI for c in candidates
        )
        if not semantic_synced:
            raise AlignmentUnavailable("Semantic alignment produced no synced fragments")

        return StrategyResult(
            candidates=candidates,
            source=AlignmentSource.SEMANTIC_AI,
            warnings=warnings,
            fallback_pages=fallback_pages,
        )


# ============================================================================
# Orchestrator
# ============================================================================


class AlignmentOrchestrator:
    """
    Runs the strategy chain for one job at a time per slot.

    Args:
        strategies: Strategies in priority order
        extractor: Fragment extractor shared by all strategies
        job_gate: Bounds how many jobs run at once
        store: Optional SyncStore used to honor stored exclusions
    """

    def __init__(
        self,
        strategies: Sequence[AlignmentStrategy],
        extractor: Optional[FragmentExtractor] = None,
        job_gate: Optional[JobConcurrencyGate] = None,
        store=None,
        allocator: Optional[LinearSpreadAllocator] = None,
    ):
        self.extractor = extractor or FragmentExtractor()
        self.allocator = allocator or LinearSpreadAllocator()
        self.job_gate = job_gate or JobConcurrencyGate()
        self.store = store
        self.fallback = LinearSpreadStrategy(self.allocator)

        self.strategies = list(strategies)
        if not any(s.name == LinearSpreadStrategy.name for s in self.strategies):
            self.strategies.append(self.fallback)

    def stored_exclusions(self, job: JobContext) -> Set[str]:
        if self.store is None or job.disable_default_exclusions:
            return set()
        excluded = self.store.excluded_ids(job.job_id)
        if excluded:
            logger.info(f"Honoring {len(excluded)} stored exclusions for job {job.job_id}")
        return excluded

    def prepare(self, job: JobContext) -> AlignmentPlan:
        """Extract fragments for every page and estimate per-page windows."""
        granularity = Granularity(job.granularity)
        exclude_ids = set(job.exclude_ids) | self.stored_exclusions(job)

        repeated = set()
        if not job.disable_default_exclusions and len(job.pages) > 1:
            repeated = self.extractor.find_repeated_texts([p.xhtml for p in job.pages])

        options = dict(
            exclude_ids=exclude_ids,
            disable_default_exclusions=job.disable_default_exclusions,
            repeated_texts=repeated,
        )
        plan = AlignmentPlan(pages={}, fragments_by_page={})

        for page in sorted(job.pages, key=lambda p: p.page_number):
            result = self.extractor.extract(page.xhtml, granularity, page_number=page.page_number, **options)
            plan.pages[page.page_number] = page
            plan.fragments_by_page[page.page_number] = result.fragments
            plan.excluded_ids |= result.excluded_ids
            plan.live_ids |= self.extractor.syncable_ids(page.xhtml)

            if job.propagate_words and granularity != Granularity.WORD:
                words = self.extractor.extract(page.xhtml, Granularity.WORD, page_number=page.page_number, **options)
                plan.words_by_page[page.page_number] = words.fragments

        weights = {
            page: sum(f.char_count for f in fragments)
            for page, fragments in plan.fragments_by_page.items()
            if fragments
        }
        plan.page_windows = estimate_page_windows(weights, job.audio_duration)

        logger.info(
            f"Job {job.job_id}: {len(plan.all_fragments)} {granularity.value} fragments on "
            f"{len(plan.pages)} pages, {len(plan.excluded_ids)} excluded"
        )
        return plan

    def propagate(self, plan: AlignmentPlan, candidates: List[AlignmentCandidate]) -> List[AlignmentCandidate]:
        words = []
        for page, page_words in plan.words_by_page.items():
            parents = [c for c in candidates if c.page_number == page and c.is_synced]
            words.extend(self.allocator.propagate_words(parents, page_words))
        return words

    async def run(self, job: JobContext) -> AlignmentRunResult:
        """
        Produce a timeline for the job.

        Strategy failures never escape: the worst case is linear spread.

        Raises:
            JobCancelledError: If the job is cancelled between suspension points
        """
        async with self.job_gate.slot(job.job_id):
            check_cancelled(job)
            plan = self.prepare(job)
            warnings: List[str] = []

            result = None
            for strategy in self.strategies:
                try:
                    attempt = await strategy.try_align(job, plan)
                except (AlignmentUnavailable, MalformedResponseError) as e:
                    check_cancelled(job)
                    logger.info(f"Strategy {strategy.name} unavailable: {e}")
                    warnings.append(f"{strategy.name} unavailable: {e}")
                    continue

                check_cancelled(job)
                if attempt.has_synced:
                    result = attempt
                    break
                logger.info(f"Strategy {strategy.name} produced no synced fragments")

            if result is None:
                result = await self.fallback.try_align(job, plan)

            candidates = list(result.candidates)
            if job.propagate_words and plan.words_by_page:
                candidates.extend(self.propagate(plan, candidates))

            if result.source == AlignmentSource.LINEAR_SPREAD:
                logger.warning(f"Job {job.job_id} aligned with linear spread (degraded quality)")
            else:
                logger.info(f"Job {job.job_id} aligned with {result.source.value}")

            return AlignmentRunResult(
                candidates=candidates,
                strategy_used=result.source,
                warnings=warnings + result.warnings,
                fallback_pages=result.fallback_pages,
                live_ids=plan.live_ids,
                excluded_ids=plan.excluded_ids,
            )


def build_orchestrator(config, gate=None, store=None, client=None) -> AlignmentOrchestrator:
    """
    Wire the default strategy chain from a SyncConfig.

    Args:
        config: SyncConfig
        gate: Shared ExternalCallGate (required for the semantic strategy)
        store: SyncStore used for stored exclusions
        client: Optional httpx.AsyncClient for the semantic adapter
    """
    strategies: List[AlignmentStrategy] = [
        ForcedAlignmentStrategy(ForcedAlignmentAdapter.from_config(config)),
    ]
    if config.semantic_enabled and gate is not None:
        adapter = SemanticAlignmentAdapter.from_config(config, gate, client=client)
        strategies.append(SemanticAlignmentStrategy(adapter))
    strategies.append(LinearSpreadStrategy())

    return AlignmentOrchestrator(
        strategies,
        job_gate=JobConcurrencyGate(config.max_concurrent_jobs),
        store=store,
    )
