"""
Unit tests for SMIL media overlay emission.
"""

import xml.etree.ElementTree as ET

import pytest

from conftest import make_record
from epubsync.emitter import EPUB_NS, SMIL_NS, MediaOverlayEmitter
from epubsync.models import Granularity


class TestMediaOverlayEmitter:
    """Tests for MediaOverlayEmitter class."""

    @pytest.fixture
    def emitter(self):
        return MediaOverlayEmitter()

    @pytest.fixture
    def records(self):
        return [
            make_record("page1_p1_s2", 2.5, 4.0),
            make_record("page1_p1_s1", 0.0, 2.5),
            make_record("page2_p1_s1", 4.0, 7.123, page=2),
            make_record("page1_p2", 0.0, 0.0, should_read=False),
        ]

    def test_round_trip(self, emitter, records):
        """Test emitted clips parse back to the same references and times."""
        smil = emitter.emit(1, records)

        clips = MediaOverlayEmitter.parse_clips(smil)

        assert clips == [
            ("page_1.xhtml#page1_p1_s1", 0.0, 2.5),
            ("page_1.xhtml#page1_p1_s2", 2.5, 4.0),
            ("page_2.xhtml#page2_p1_s1", 4.0, 7.123),
        ]

    def test_document_structure(self, emitter, records):
        """Test the SMIL root, per-page seq and par layout."""
        smil = emitter.emit(1, records, page_filenames={1: "chapter1.xhtml"})
        root = ET.fromstring(smil.encode("utf-8"))

        assert root.tag == f"{{{SMIL_NS}}}smil"
        assert root.get("version") == "3.0"
        seqs = root.findall(f"{{{SMIL_NS}}}body/{{{SMIL_NS}}}seq")
        assert [s.get(f"{{{EPUB_NS}}}textref") for s in seqs] == ["chapter1.xhtml", "page_2.xhtml"]

        par = seqs[0].find(f"{{{SMIL_NS}}}par")
        assert par.get("id") == "par_page1_p1_s1"
        audio = par.find(f"{{{SMIL_NS}}}audio")
        assert audio.get("src") == "book.mp3"
        assert audio.get("clipBegin") == "00:00:00.000"
        assert audio.get("clipEnd") == "00:00:02.500"

    def test_excluded_records_omitted(self, emitter, records):
        """Test should_read=False markers never reach the overlay."""
        smil = emitter.emit(1, records)

        assert "page1_p2" not in smil

    def test_finest_level_only(self, emitter):
        """Test sentences are dropped when their words were emitted."""
        records = [
            make_record("page1_p1_s1", 0.0, 2.0),
            make_record("page1_p1_s1_w1", 0.0, 1.0),
            make_record("page1_p1_s1_w2", 1.0, 2.0),
            make_record("page1_p1_s2", 2.0, 3.0),
        ]

        clips = MediaOverlayEmitter.parse_clips(emitter.emit(1, records))

        assert [src.split("#")[1] for src, _, _ in clips] == [
            "page1_p1_s1_w1",
            "page1_p1_s1_w2",
            "page1_p1_s2",
        ]

    def test_explicit_granularity(self, records):
        """Test a fixed granularity emits only that level."""
        emitter = MediaOverlayEmitter(granularity=Granularity.WORD)
        records.append(make_record("page1_p1_s1_w1", 0.0, 1.0))

        clips = MediaOverlayEmitter.parse_clips(emitter.emit(1, records))

        assert [src for src, _, _ in clips] == ["page_1.xhtml#page1_p1_s1_w1"]

    def test_path_prefixes(self, records):
        """Test text and audio directories are prefixed to references."""
        emitter = MediaOverlayEmitter(text_dir="../Text/", audio_dir="../Audio")

        smil = emitter.emit(1, records, audio_src="narration.m4a")

        assert 'src="../Text/page_1.xhtml#page1_p1_s1"' in smil
        assert 'src="../Audio/narration.m4a"' in smil

    def test_emit_pages(self, emitter, records):
        """Test one document per page."""
        documents = emitter.emit_pages(1, records)

        assert sorted(documents) == [1, 2]
        assert "page2_p1_s1" not in documents[1]

    def test_write(self, emitter, records, tmp_path):
        """Test SMIL files are named after their XHTML documents."""
        written = emitter.write(1, records, str(tmp_path), page_filenames={2: "chapter2.xhtml"})

        assert sorted(p.name for p in written) == ["chapter2.smil", "page_1.smil"]
        content = (tmp_path / "chapter2.smil").read_text(encoding="utf-8")
        assert content.startswith("<?xml")
        assert "chapter2.xhtml#page2_p1_s1" in content

    def test_no_records(self, emitter):
        """Test an empty job yields an empty body."""
        assert MediaOverlayEmitter.parse_clips(emitter.emit(1, [])) == []
