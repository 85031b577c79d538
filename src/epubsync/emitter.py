"""
EPUB3 Media Overlay (SMIL) emitter for epubsync.

Renders persisted sync records into SMIL documents that pair XHTML
fragment references with audio clip ranges, and parses them back.
"""

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .models import Granularity, SyncRecord
from .utils import (
    clock_value_to_seconds,
    fragment_sort_key,
    get_logger,
    granularity_from_id,
    seconds_to_clock_value,
)

logger = get_logger(__name__)

SMIL_NS = "http://www.w3.org/ns/SMIL"
EPUB_NS = "http://www.idpf.org/2007/ops"

ET.register_namespace("", SMIL_NS)
ET.register_namespace("epub", EPUB_NS)


def _ancestor_ids(block_ids: Set[str]) -> Set[str]:
    """Ids that are a proper hierarchical prefix of another id in the set."""
    prefixes = set()
    for block_id in block_ids:
        parts = block_id.split("_")
        for i in range(1, len(parts)):
            prefixes.add("_".join(parts[:i]))
    return prefixes & block_ids


class MediaOverlayEmitter:
    """
    Builds SMIL 3.0 media overlay documents.

    By default only the finest level present is emitted: when words were
    propagated from sentences, the words are emitted and their sentences
    are not, so no text is highlighted twice.
    """

    def __init__(
        self,
        text_dir: str = "",
        audio_dir: str = "",
        granularity: Optional[Granularity] = None,
    ):
        """
        Initialize the emitter.

        Args:
            text_dir: Path prefix of XHTML documents relative to the SMIL file
            audio_dir: Path prefix of the audio file relative to the SMIL file
            granularity: Emit only this level instead of the finest level present
        """
        self.text_dir = text_dir.rstrip("/")
        self.audio_dir = audio_dir.rstrip("/")
        self.granularity = Granularity(granularity) if granularity else None

    def _text_ref(self, filename: str) -> str:
        return f"{self.text_dir}/{filename}" if self.text_dir else filename

    def _audio_ref(self, record: SyncRecord, audio_src: Optional[str]) -> str:
        name = audio_src or Path(record.audio_file_path or "audio.mp3").name
        return f"{self.audio_dir}/{name}" if self.audio_dir else name

    def group_by_page(self, records: Sequence[SyncRecord]) -> Dict[int, List[SyncRecord]]:
        """
        Select the records to emit, grouped by page in document order.

        Excluded records (should_read=False) and records without times
        are dropped.
        """
        playable = [
            r for r in records
            if r.should_read and r.start_time is not None and r.end_time is not None
        ]

        if self.granularity:
            playable = [r for r in playable if granularity_from_id(r.block_id) == self.granularity.value]
        else:
            containers = _ancestor_ids({r.block_id for r in playable})
            playable = [r for r in playable if r.block_id not in containers]

        pages: Dict[int, List[SyncRecord]] = {}
        for record in playable:
            pages.setdefault(record.page_number, []).append(record)
        for page_records in pages.values():
            page_records.sort(key=lambda r: (fragment_sort_key(r.block_id), r.start_time))

        return dict(sorted(pages.items()))

    def _append_seq(
        self,
        body: ET.Element,
        page: int,
        records: List[SyncRecord],
        filename: str,
        audio_src: Optional[str],
    ):
        text_ref = self._text_ref(filename)
        seq = ET.SubElement(
            body,
            f"{{{SMIL_NS}}}seq",
            {"id": f"seq_page{page}", f"{{{EPUB_NS}}}textref": text_ref},
        )
        for record in records:
            par = ET.SubElement(seq, f"{{{SMIL_NS}}}par", {"id": f"par_{record.block_id}"})
            ET.SubElement(par, f"{{{SMIL_NS}}}text", {"src": f"{text_ref}#{record.block_id}"})
            ET.SubElement(
                par,
                f"{{{SMIL_NS}}}audio",
                {
                    "src": self._audio_ref(record, audio_src),
                    "clipBegin": seconds_to_clock_value(record.start_time),
                    "clipEnd": seconds_to_clock_value(record.end_time),
                },
            )

    @staticmethod
    def _serialize(root: ET.Element) -> str:
        ET.indent(root, space="  ")
        return ET.tostring(root, encoding="utf-8", xml_declaration=True).decode("utf-8")

    @staticmethod
    def _new_document() -> Tuple[ET.Element, ET.Element]:
        root = ET.Element(f"{{{SMIL_NS}}}smil", {"version": "3.0"})
        body = ET.SubElement(root, f"{{{SMIL_NS}}}body")
        return root, body

    def emit(
        self,
        job_id: int,
        records: Sequence[SyncRecord],
        page_filenames: Optional[Dict[int, str]] = None,
        audio_src: Optional[str] = None,
    ) -> str:
        """
        Render one SMIL document for the whole job, one <seq> per page.

        Args:
            job_id: Conversion job id
            records: Sync records of the job (any order)
            page_filenames: XHTML filename per page (default: page_{n}.xhtml)
            audio_src: Audio file name to reference instead of the record's

        Returns:
            SMIL document as a string
        """
        page_filenames = page_filenames or {}
        root, body = self._new_document()
        pages = self.group_by_page(records)

        for page, page_records in pages.items():
            filename = page_filenames.get(page, f"page_{page}.xhtml")
            self._append_seq(body, page, page_records, filename, audio_src)

        clips = sum(len(r) for r in pages.values())
        logger.info(f"Emitted media overlay for job {job_id}: {clips} clips on {len(pages)} pages")
        return self._serialize(root)

    def emit_pages(
        self,
        job_id: int,
        records: Sequence[SyncRecord],
        page_filenames: Optional[Dict[int, str]] = None,
        audio_src: Optional[str] = None,
    ) -> Dict[int, str]:
        """Render one SMIL document per XHTML spine item."""
        page_filenames = page_filenames or {}
        documents = {}

        for page, page_records in self.group_by_page(records).items():
            root, body = self._new_document()
            filename = page_filenames.get(page, f"page_{page}.xhtml")
            self._append_seq(body, page, page_records, filename, audio_src)
            documents[page] = self._serialize(root)

        logger.debug(f"Emitted {len(documents)} per-page overlays for job {job_id}")
        return documents

    def write(
        self,
        job_id: int,
        records: Sequence[SyncRecord],
        output_dir: str,
        page_filenames: Optional[Dict[int, str]] = None,
        audio_src: Optional[str] = None,
    ) -> List[Path]:
        """
        Write one .smil file per page, named after its XHTML document.

        Returns:
            Paths of the written files
        """
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        page_filenames = page_filenames or {}

        written = []
        for page, document in self.emit_pages(job_id, records, page_filenames, audio_src).items():
            stem = Path(page_filenames.get(page, f"page_{page}.xhtml")).stem
            path = out / f"{stem}.smil"
            path.write_text(document, encoding="utf-8")
            written.append(path)

        logger.info(f"Wrote {len(written)} SMIL files to {out}")
        return written

    @staticmethod
    def parse_clips(smil: str) -> List[Tuple[str, float, float]]:
        """
        Read (text src, clipBegin, clipEnd) triples back from a SMIL document.

        Clock values are converted back to seconds, so emitting records
        and parsing the result reproduces their times to the millisecond.
        """
        root = ET.fromstring(smil.encode("utf-8"))
        clips = []

        for par in root.iter():
            if par.tag.split("}")[-1] != "par":
                continue
            text_src = None
            begin = end = None
            for child in par:
                tag = child.tag.split("}")[-1]
                if tag == "text":
                    text_src = child.get("src")
                elif tag == "audio":
                    begin = clock_value_to_seconds(child.get("clipBegin", "0"))
                    end = clock_value_to_seconds(child.get("clipEnd", "0"))
            if text_src is not None and begin is not None:
                clips.append((text_src, begin, end))

        return clips
