"""
Linear spread allocation module for epubsync.

Distributes a known time window across fragments in proportion to
their character counts. Used as the strategy of last resort, to derive
word timings inside aligned sentences or paragraphs, and to estimate
per-page windows when only the whole-job duration is known.
"""

from typing import Dict, List, Sequence

from .models import AlignmentCandidate, AlignmentSource, TextFragment
from .utils import get_logger, is_descendant_id, round_time

logger = get_logger(__name__)


class LinearSpreadAllocator:
    """
    Proportional time allocation by character weight.

    Never needs audio analysis and never fails for a valid window.
    """

    def __init__(self, source: AlignmentSource = AlignmentSource.LINEAR_SPREAD):
        self.source = source

    @staticmethod
    def weight(fragment: TextFragment) -> int:
        return max(1, fragment.char_count)

    def allocate(
        self,
        fragments: Sequence[TextFragment],
        window_start: float,
        window_end: float,
    ) -> List[AlignmentCandidate]:
        """
        Split a time window across fragments by character weight.

        Slice boundaries come from cumulative weights, so the first
        fragment starts at window_start and the last ends exactly at
        window_end with no drift.

        Args:
            fragments: Fragments in document order
            window_start: Window start in seconds
            window_end: Window end in seconds

        Returns:
            One synced candidate per fragment

        Raises:
            ValueError: If the window is empty or inverted and there are fragments

        Example:
            Three one-character fragments over [0, 9] get [0, 3], [3, 6], [6, 9].
        """
        if not fragments:
            return []

        if window_end <= window_start:
            raise ValueError(f"Invalid window [{window_start}, {window_end}]")

        weights = [self.weight(f) for f in fragments]
        total_weight = sum(weights)
        span = window_end - window_start

        candidates = []
        cumulative = 0
        start = window_start
        for i, (fragment, weight) in enumerate(zip(fragments, weights)):
            cumulative += weight
            if i == len(fragments) - 1:
                end = window_end
            else:
                end = window_start + span * cumulative / total_weight

            candidates.append(
                AlignmentCandidate(
                    fragment_id=fragment.id,
                    page_number=fragment.page_number,
                    source=self.source,
                    start_time=round_time(start),
                    end_time=round_time(end),
                    text=fragment.text,
                )
            )
            start = end

        logger.debug(
            f"Spread {len(fragments)} fragments over [{window_start:.3f}, {window_end:.3f}]"
        )
        return candidates

    def propagate_words(
        self,
        parents: Sequence[AlignmentCandidate],
        words: Sequence[TextFragment],
    ) -> List[AlignmentCandidate]:
        """
        Derive word timings inside synced sentence or paragraph windows.

        Each parent's descendant words (by hierarchical id prefix) are
        spread over that parent's window, so no word can leave the range
        of its container. Skipped parents contribute no words.

        Args:
            parents: Sentence or paragraph candidates from any strategy
            words: Word fragments of the same pages

        Returns:
            Word-level candidates, tagged with the parent's source
        """
        propagated = []
        for parent in parents:
            if not parent.is_synced or parent.duration <= 0:
                continue

            children = [w for w in words if is_descendant_id(w.id, parent.fragment_id)]
            if not children:
                continue

            allocator = LinearSpreadAllocator(source=parent.source)
            propagated.extend(
                allocator.allocate(children, parent.start_time, parent.end_time)
            )

        if propagated:
            logger.info(f"Propagated timings to {len(propagated)} words")
        return propagated


def estimate_page_windows(
    page_weights: Dict[int, int],
    total_duration: float,
) -> Dict[int, tuple]:
    """
    Split the whole audio duration across pages by character count.

    Args:
        page_weights: Mapping of page number to total character count
        total_duration: Audio duration in seconds

    Returns:
        Mapping of page number to (window_start, window_end), in page order
    """
    pages = sorted(page_weights)
    if not pages or total_duration <= 0:
        return {}

    weights = [max(1, page_weights[p]) for p in pages]
    total_weight = sum(weights)

    windows = {}
    cumulative = 0
    start = 0.0
    for i, (page, weight) in enumerate(zip(pages, weights)):
        cumulative += weight
        end = total_duration if i == len(pages) - 1 else total_duration * cumulative / total_weight
        windows[page] = (round_time(start), round_time(end))
        start = end

    logger.debug(f"Estimated windows for {len(windows)} pages over {total_duration:.3f}s")
    return windows
