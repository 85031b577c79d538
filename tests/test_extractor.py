"""
Unit tests for fragment extraction.
"""

import pytest

from epubsync.extractor import FragmentExtractor, extract_fragments
from epubsync.models import Granularity
from epubsync.utils import ExtractionError


TOC_PAGE = """<html><body>
  <nav epub:type="toc"><p id="page1_p1"><span id="page1_p1_s1">Chapter One</span></p></nav>
  <p id="page1_p2"><span id="page1_p2_s1">Contents</span></p>
  <p id="page1_p3"><span id="page1_p3_s1">Chapter Two .......... 12</span></p>
  <p id="page1_p4"><span id="page1_p4_s1">It was a dark night.</span></p>
  <p id="page1_p5" data-read-aloud="false"><span id="page1_p5_s1">Figure 1.</span></p>
  <div class="footer"><p id="page1_p6"><span id="page1_p6_s1">Page 1</span></p></div>
</body></html>
"""


class TestFragmentExtractor:
    """Tests for FragmentExtractor class."""

    @pytest.fixture
    def extractor(self):
        return FragmentExtractor()

    def test_sentences_in_order(self, extractor, page_one):
        """Test sentence extraction returns document order with dense order."""
        result = extractor.extract(page_one, Granularity.SENTENCE)

        assert [f.id for f in result.fragments] == ["page1_p1_s1", "page1_p1_s2", "page1_p2_s1"]
        assert [f.order for f in result.fragments] == [0, 1, 2]
        assert result.fragments[0].text == "Call me Ishmael."
        assert all(f.granularity == Granularity.SENTENCE for f in result.fragments)
        assert all(f.page_number == 1 for f in result.fragments)

    def test_words_are_leaves(self, extractor, page_one):
        """Test word extraction returns only leaf elements."""
        result = extractor.extract(page_one, Granularity.WORD)

        assert [f.text for f in result.fragments] == [
            "Call", "me", "Ishmael.", "Some", "years", "ago.", "Never", "mind", "how.",
        ]
        assert result.fragments[0].id == "page1_p1_s1_w1"

    def test_paragraphs(self, extractor, page_one):
        """Test paragraph extraction joins inline spans into one text."""
        result = extractor.extract(page_one, Granularity.PARAGRAPH)

        assert [f.id for f in result.fragments] == ["page1_p1", "page1_p2"]
        assert result.fragments[0].text == "Call me Ishmael. Some years ago."

    def test_sync_classes(self, extractor):
        """Test sync-sentence / sync-word classes mark syncable elements."""
        xhtml = (
            '<p><span class="sync-sentence" id="intro-1">'
            '<span class="sync-word" id="w-a">Hello</span> <span class="sync-word" id="w-b">there.</span>'
            "</span></p>"
        )

        sentences = extractor.extract(xhtml, Granularity.SENTENCE, page_number=5)
        words = extractor.extract(xhtml, Granularity.WORD, page_number=5)

        assert [f.id for f in sentences.fragments] == ["intro-1"]
        assert sentences.fragments[0].page_number == 5
        assert [f.id for f in words.fragments] == ["w-a", "w-b"]

    def test_legacy_ids_use_page_number(self, extractor):
        """Test ids without a page prefix take the given page number."""
        result = extractor.extract('<p id="p1"><span id="p1_s1">Hi.</span></p>', page_number=3)

        assert result.fragments[0].id == "p1_s1"
        assert result.fragments[0].page_number == 3

    def test_default_exclusions(self, extractor):
        """Test TOC, headings, dot leaders, flags and footers are excluded."""
        result = extractor.extract(TOC_PAGE, Granularity.SENTENCE)

        assert [f.id for f in result.fragments] == ["page1_p4_s1"]
        assert result.excluded_ids == {
            "page1_p1_s1", "page1_p2_s1", "page1_p3_s1", "page1_p5_s1", "page1_p6_s1",
        }

    def test_disable_default_exclusions(self, extractor):
        """Test every element is syncable when default rules are off."""
        result = extractor.extract(TOC_PAGE, Granularity.SENTENCE, disable_default_exclusions=True)

        assert len(result.fragments) == 6
        assert result.excluded_ids == set()

    def test_explicit_exclusions_with_descendants(self, extractor, page_one):
        """Test excluding a paragraph excludes its sentences and words."""
        sentences = extractor.extract(page_one, Granularity.SENTENCE, exclude_ids={"page1_p1"})
        words = extractor.extract(page_one, Granularity.WORD, exclude_ids={"page1_p1"})

        assert [f.id for f in sentences.fragments] == ["page1_p2_s1"]
        assert all(f.id.startswith("page1_p2") for f in words.fragments)
        assert "page1_p1_s1_w1" in words.excluded_ids

    def test_explicit_exclusions_apply_without_defaults(self, extractor, page_one):
        """Test caller exclusions still apply when default rules are disabled."""
        result = extractor.extract(
            page_one, Granularity.SENTENCE, exclude_ids={"page1_p2_s1"}, disable_default_exclusions=True
        )

        assert "page1_p2_s1" not in [f.id for f in result.fragments]

    def test_empty_elements_dropped(self, extractor):
        """Test elements without text are not fragments."""
        xhtml = '<p id="page1_p1"><span id="page1_p1_s1">  </span><span id="page1_p1_s2">Yes.</span></p>'

        result = extractor.extract(xhtml, Granularity.SENTENCE)

        assert [f.id for f in result.fragments] == ["page1_p1_s2"]
        assert result.fragments[0].order == 0

    def test_no_syncable_elements(self, extractor):
        """Test a page without ids yields no fragments."""
        assert extractor.extract("<p>Plain text</p>").fragments == []

    def test_none_content(self, extractor):
        """Test missing content is an extraction error."""
        with pytest.raises(ExtractionError):
            extractor.extract(None)

    def test_syncable_ids(self, extractor, page_one):
        """Test every level's ids are listed."""
        ids = extractor.syncable_ids(page_one)

        assert {"page1_p1", "page1_p1_s1", "page1_p1_s1_w1", "page1_p2_s1_w3"} <= ids
        assert len(ids) == 2 + 3 + 9

    def test_repeated_texts(self, extractor):
        """Test running headers repeated at page edges are detected."""
        pages = [
            f'<p id="page{n}_p1">Moby Dick</p><p id="page{n}_p2">Body {n}.</p>'
            f'<p id="page{n}_p3">Body more {n}.</p><p id="page{n}_p4">Body end {n}.</p>'
            f'<p id="page{n}_p5">Herman Melville</p>'
            for n in (1, 2, 3)
        ]

        repeated = extractor.find_repeated_texts(pages)

        assert repeated == {"moby dick", "herman melville"}

        result = extractor.extract(pages[0], Granularity.PARAGRAPH, repeated_texts=repeated)
        assert [f.id for f in result.fragments] == ["page1_p2", "page1_p3", "page1_p4"]

    def test_extract_fragments_function(self, page_two):
        """Test convenience function."""
        result = extract_fragments(page_two, Granularity.WORD)

        assert result.texts == ["Having", "little", "money."]
