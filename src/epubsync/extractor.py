"""
Fragment extraction module for epubsync.

Parses XHTML content documents into ordered lists of syncable text
fragments at a requested granularity, applying exclusion rules for
content that is never narrated (tables of contents, running headers,
page numbers, elements flagged data-read-aloud="false").
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from bs4 import BeautifulSoup, Tag

from .models import Granularity, TextFragment
from .utils import (
    ExtractionError,
    get_logger,
    granularity_from_id,
    is_fragment_id,
    normalize_for_matching,
    page_number_from_id,
)

logger = get_logger(__name__)

# Attribute tokens (id, class, epub:type, role) marking unspoken regions
EXCLUDED_TOKEN_PATTERN = re.compile(
    r"^(toc|table-of-contents|contents|index|chapter-index|chapter-idx|"
    r"nav.*|header.*|footer.*|running-(head|foot).*|page-?num(ber)?|pagebreak|"
    r"sidebar|menu|skip.*|metadata|doc-(toc|index|pagebreak|pageheader|pagefooter))$",
    re.IGNORECASE,
)

# "Chapter 1 ........ 5" style table of contents lines
TOC_LINE_PATTERN = re.compile(r"(?:\.\s*){4,}\d+$|…{2,}\s*\d+$")
TOC_HEADINGS = {"contents", "table of contents", "index"}

SYNC_WORD_CLASS = "sync-word"
SYNC_SENTENCE_CLASS = "sync-sentence"


@dataclass
class ExtractionResult:
    """Fragments in document order plus the ids dropped by exclusion rules."""

    fragments: List[TextFragment] = field(default_factory=list)
    excluded_ids: Set[str] = field(default_factory=set)

    @property
    def texts(self) -> List[str]:
        return [f.text for f in self.fragments]


class FragmentExtractor:
    """
    Extracts syncable fragments from XHTML.

    Syncable elements carry hierarchical ids such as page4_p1_s1_w2
    (legacy ids without the page prefix are accepted), or the
    sync-word / sync-sentence classes used by the XHTML generator.
    """

    def __init__(self, parser: str = "html.parser"):
        """
        Initialize the extractor.

        Args:
            parser: BeautifulSoup tree builder (default: html.parser)
        """
        self.parser = parser

    def _parse(self, xhtml: str) -> BeautifulSoup:
        if xhtml is None:
            raise ExtractionError("No XHTML content supplied")
        try:
            return BeautifulSoup(xhtml, self.parser)
        except Exception as e:
            raise ExtractionError(f"Failed to parse XHTML: {e}")

    @staticmethod
    def _element_text(el: Tag) -> str:
        text = " ".join(el.get_text(" ").split())
        # get_text(" ") separates inline spans; re-attach punctuation
        return re.sub(r"\s+([,.;:!?])", r"\1", text)

    @staticmethod
    def _is_syncable(el: Tag) -> bool:
        el_id = el.get("id")
        if not el_id:
            return False
        classes = el.get("class") or []
        if SYNC_WORD_CLASS in classes or SYNC_SENTENCE_CLASS in classes:
            return True
        return is_fragment_id(el_id)

    @staticmethod
    def _element_type(el: Tag) -> Granularity:
        classes = el.get("class") or []
        if SYNC_WORD_CLASS in classes:
            return Granularity.WORD
        if SYNC_SENTENCE_CLASS in classes:
            return Granularity.SENTENCE
        return Granularity(granularity_from_id(el["id"]))

    def _syncable_elements(self, soup: BeautifulSoup) -> List[Tag]:
        return [el for el in soup.find_all(id=True) if self._is_syncable(el)]

    def _marks_unspoken(self, node: Tag) -> bool:
        """Default rules evaluated on a single element."""
        if node.get("data-read-aloud") == "false" or node.get("data-should-sync") == "false":
            return True
        if node.name == "nav":
            return True

        tokens = []
        node_id = node.get("id")
        if node_id and not is_fragment_id(node_id):
            tokens.append(node_id)
        tokens.extend(node.get("class") or [])
        tokens.extend((node.get("epub:type") or "").split())
        tokens.extend((node.get("role") or "").split())

        return any(EXCLUDED_TOKEN_PATTERN.match(token) for token in tokens)

    def _is_excluded(
        self,
        el: Tag,
        exclude_ids: Set[str],
        disable_default_exclusions: bool,
        repeated_texts: Set[str],
        cache: Dict[int, bool],
    ) -> bool:
        """Check the element and its ancestors against every exclusion rule."""
        for node in [el] + list(el.parents):
            if not isinstance(node, Tag) or node.name == "[document]":
                continue
            key = id(node)
            if key not in cache:
                cache[key] = self._node_excluded(
                    node, exclude_ids, disable_default_exclusions, repeated_texts
                )
            if cache[key]:
                return True
        return False

    def _node_excluded(
        self,
        node: Tag,
        exclude_ids: Set[str],
        disable_default_exclusions: bool,
        repeated_texts: Set[str],
    ) -> bool:
        node_id = node.get("id")
        if node_id and node_id in exclude_ids:
            return True
        if disable_default_exclusions:
            return False
        if self._marks_unspoken(node):
            return True

        # Text rules only apply to containers, never to single words
        if self._is_syncable(node) and self._element_type(node) != Granularity.WORD:
            text = self._element_text(node)
            if TOC_LINE_PATTERN.search(text):
                return True
            normalized = normalize_for_matching(text)
            if normalized in TOC_HEADINGS:
                return True
            if (
                repeated_texts
                and self._element_type(node) == Granularity.PARAGRAPH
                and normalized in repeated_texts
            ):
                return True

        return False

    def extract(
        self,
        xhtml: str,
        granularity: Granularity = Granularity.SENTENCE,
        page_number: Optional[int] = None,
        exclude_ids: Optional[Iterable[str]] = None,
        disable_default_exclusions: bool = False,
        repeated_texts: Optional[Set[str]] = None,
    ) -> ExtractionResult:
        """
        Extract syncable fragments in document order.

        At word granularity every leaf syncable element is a fragment; at
        sentence or paragraph granularity the matching containers are, and
        their descendants are never emitted as well.

        Args:
            xhtml: XHTML content of one page
            granularity: Fragment level to extract
            page_number: Page used when an id has no page prefix
            exclude_ids: Ids that must never be synced (with descendants)
            disable_default_exclusions: Skip the built-in unspoken-content rules
            repeated_texts: Normalized running header/footer texts to drop

        Returns:
            ExtractionResult with fragments and excluded ids
        """
        granularity = Granularity(granularity)
        exclude_set = set(exclude_ids or ())
        repeated = set(repeated_texts or ()) if not disable_default_exclusions else set()

        soup = self._parse(xhtml)
        syncable = self._syncable_elements(soup)
        syncable_keys = {id(el) for el in syncable}

        result = ExtractionResult()
        selected: Set[int] = set()
        exclusion_cache: Dict[int, bool] = {}
        orders: Dict[int, int] = {}

        for el in syncable:
            if granularity == Granularity.WORD:
                if any(id(d) in syncable_keys for d in el.find_all(id=True)):
                    continue
            elif self._element_type(el) != granularity:
                continue

            if any(id(parent) in selected for parent in el.parents):
                continue
            selected.add(id(el))

            text = self._element_text(el)
            if not text:
                continue

            el_id = el["id"]
            if self._is_excluded(el, exclude_set, disable_default_exclusions, repeated, exclusion_cache):
                result.excluded_ids.add(el_id)
                logger.debug(f"Excluding unspoken content: {el_id} ({text[:30]}...)")
                continue

            page = page_number_from_id(el_id, default=page_number or 1)
            order = orders.get(page, 0)
            orders[page] = order + 1

            result.fragments.append(
                TextFragment(
                    id=el_id,
                    text=text,
                    granularity=granularity,
                    page_number=page,
                    order=order,
                )
            )

        if result.excluded_ids:
            logger.info(
                f"Excluded {len(result.excluded_ids)} unspoken {granularity.value} elements "
                f"(TOC, headers, etc.)"
            )
        if not result.fragments:
            logger.warning(f"No {granularity.value}-level elements found in XHTML")
        else:
            logger.debug(f"Extracted {len(result.fragments)} syncable {granularity.value} fragments")

        return result

    def syncable_ids(self, xhtml: str) -> Set[str]:
        """Every syncable id on the page, at all granularities."""
        soup = self._parse(xhtml)
        return {el["id"] for el in self._syncable_elements(soup)}

    def find_repeated_texts(
        self,
        pages: Iterable[str],
        min_pages: int = 2,
        max_length: int = 80,
        edge_size: int = 2,
    ) -> Set[str]:
        """
        Detect running headers and footers repeated verbatim across pages.

        Only the first and last `edge_size` paragraph-level elements of
        each page are considered, since running heads sit at page edges.

        Args:
            pages: XHTML content of each page
            min_pages: Pages a text must appear on to count as repeated
            max_length: Longest text considered a header or footer
            edge_size: Elements inspected at the top and bottom of a page

        Returns:
            Set of normalized texts
        """
        counts: Counter = Counter()

        for xhtml in pages:
            soup = self._parse(xhtml)
            paragraphs = [
                el for el in self._syncable_elements(soup)
                if self._element_type(el) == Granularity.PARAGRAPH
            ]
            edges = paragraphs[:edge_size] + paragraphs[-edge_size:]

            page_texts = set()
            for el in edges:
                normalized = normalize_for_matching(self._element_text(el))
                if normalized and len(normalized) <= max_length:
                    page_texts.add(normalized)
            counts.update(page_texts)

        repeated = {text for text, count in counts.items() if count >= min_pages}
        if repeated:
            logger.info(f"Detected {len(repeated)} running header/footer texts across pages")
        return repeated


def extract_fragments(
    xhtml: str,
    granularity: Granularity = Granularity.SENTENCE,
    **options,
) -> ExtractionResult:
    """
    Convenience function for fragment extraction.

    Args:
        xhtml: XHTML content of one page
        granularity: Fragment level to extract
        **options: Passed through to FragmentExtractor.extract

    Returns:
        ExtractionResult with fragments and excluded ids
    """
    return FragmentExtractor().extract(xhtml, granularity, **options)
