"""
Forced alignment module for epubsync.

Aligns known fragment texts against the narration waveform with an
external forced aligner. Two backends are supported:

- aeneas, run as an external process (the default)
- WhisperX wav2vec2 alignment, run in-process (optional extra)

Every failure mode (tool missing, non-zero exit, timeout, unusable
output) raises AlignmentUnavailable so the orchestrator can fall back.
"""

import asyncio
import importlib.util
import json
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import Levenshtein
import torch

from .audio import AudioLoader
from .linear import LinearSpreadAllocator
from .models import AlignmentCandidate, AlignmentSource, TextFragment
from .utils import (
    AlignmentUnavailable,
    AudioLoadError,
    clean_text_for_alignment,
    get_logger,
    normalize_for_matching,
    round_time,
)

logger = get_logger(__name__)

# ISO 639-3 (aeneas) to ISO 639-1 (wav2vec2 models)
LANGUAGE_CODES = {
    "eng": "en",
    "spa": "es",
    "fra": "fr",
    "deu": "de",
    "ita": "it",
    "por": "pt",
    "nld": "nl",
    "eus": "eu",
    "cat": "ca",
}


def to_iso639_1(language: str) -> str:
    """
    Example:
        >>> to_iso639_1("eng")
        'en'
        >>> to_iso639_1("es")
        'es'
    """
    language = language.lower()
    if len(language) == 2:
        return language
    return LANGUAGE_CODES.get(language, language[:2])


class AeneasBackend:
    """Runs `python -m aeneas.tools.execute_task` as an awaited subprocess."""

    name = "aeneas"
    MODULE = "aeneas.tools.execute_task"

    def __init__(self, python_executable: Optional[str] = None, timeout: float = 600.0):
        self.python_executable = python_executable or sys.executable
        self.timeout = timeout

    async def _run(self, args: List[str], timeout: float):
        cmd = [self.python_executable, "-m", self.MODULE] + args
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AlignmentUnavailable(f"Could not start aeneas: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise AlignmentUnavailable(f"aeneas timed out after {timeout:.0f}s")

        return process.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def is_available(self) -> bool:
        try:
            returncode, _, _ = await self._run(["--version"], timeout=30.0)
        except AlignmentUnavailable as e:
            logger.info(f"aeneas not available: {e}")
            return False
        return returncode == 0

    @staticmethod
    def build_text_file(fragments: Sequence[TextFragment]) -> str:
        """
        Render fragments in the aeneas "parsed" text format (id|text per line).

        Example:
            >>> AeneasBackend.build_text_file([TextFragment("page1_p1", "Hi  there", "paragraph", 1, 0)])
            'page1_p1|Hi there\\n'
        """
        lines = []
        for fragment in fragments:
            text = clean_text_for_alignment(fragment.text).replace("|", " ")
            lines.append(f"{fragment.id}|{text}")
        return "\n".join(lines) + "\n"

    @staticmethod
    def parse_sync_map(content: str) -> List[Dict]:
        """
        Parse an aeneas JSON sync map into [{id, begin, end}].

        Raises:
            AlignmentUnavailable: If the sync map is unparsable
        """
        try:
            data = json.loads(content)
            entries = []
            for fragment in data["fragments"]:
                entries.append(
                    {
                        "id": fragment["id"],
                        "begin": float(fragment["begin"]),
                        "end": float(fragment["end"]),
                    }
                )
        except (ValueError, KeyError, TypeError) as e:
            raise AlignmentUnavailable(f"Unparsable aeneas sync map: {e}")
        return entries

    async def align(self, audio_path: str, fragments: Sequence[TextFragment], language: str) -> List[Dict]:
        config = f"task_language={language}|is_text_type=parsed|os_task_file_format=json"

        with tempfile.TemporaryDirectory(prefix="epubsync_aeneas_") as tmp_dir:
            text_path = Path(tmp_dir) / "fragments.txt"
            output_path = Path(tmp_dir) / "syncmap.json"
            # aeneas rejects a BOM, so write plain utf-8
            text_path.write_text(self.build_text_file(fragments), encoding="utf-8")

            logger.info(f"Running aeneas on {len(fragments)} fragments (timeout {self.timeout:.0f}s)")
            returncode, _, stderr = await self._run(
                [str(audio_path), str(text_path), config, str(output_path)],
                timeout=self.timeout,
            )
            if returncode != 0:
                tail = stderr.strip().splitlines()[-1:] or ["no output"]
                raise AlignmentUnavailable(f"aeneas exited with code {returncode}: {tail[0]}")
            if not output_path.exists():
                raise AlignmentUnavailable("aeneas produced no sync map")

            return self.parse_sync_map(output_path.read_text(encoding="utf-8"))


class WhisperXBackend:
    """
    wav2vec2 alignment through WhisperX.

    The joined fragment text is aligned as one segment spanning the whole
    track, then the aligned words are handed back to fragments by word
    count.
    """

    name = "whisperx"

    def __init__(
        self,
        device: str = "auto",
        min_similarity: float = 0.6,
        loader: Optional[AudioLoader] = None,
    ):
        if device == "auto":
            self.device = "cuda" if torch.cuda.is_available() else "cpu"
        else:
            self.device = device
        self.min_similarity = min_similarity
        self.loader = loader or AudioLoader(target_sample_rate=16000)
        self._models: Dict[str, tuple] = {}

    async def is_available(self) -> bool:
        return importlib.util.find_spec("whisperx") is not None

    def _load_model(self, language_code: str):
        import whisperx

        if language_code not in self._models:
            logger.info(f"Loading alignment model for language: {language_code}")
            try:
                self._models[language_code] = whisperx.load_align_model(
                    language_code=language_code,
                    device=self.device,
                )
            except Exception as e:
                raise AlignmentUnavailable(f"Failed to load alignment model: {e}")
        return self._models[language_code]

    def _align_sync(self, audio_path: str, fragments: Sequence[TextFragment], language: str) -> List[Dict]:
        import whisperx

        try:
            audio = self.loader.load_waveform(audio_path)
        except AudioLoadError as e:
            raise AlignmentUnavailable(str(e))

        duration = len(audio) / self.loader.target_sample_rate
        model, metadata = self._load_model(to_iso639_1(language))

        texts = [clean_text_for_alignment(f.text) for f in fragments]
        segment = {"text": " ".join(texts), "start": 0.0, "end": duration}

        try:
            result = whisperx.align(
                [segment],
                model,
                metadata,
                audio,
                self.device,
                return_char_alignments=False,
            )
        except Exception as e:
            raise AlignmentUnavailable(f"WhisperX alignment failed: {e}")

        words = [w for seg in result.get("segments", []) for w in seg.get("words", [])]
        return self.map_words(fragments, texts, words)

    def map_words(self, fragments: Sequence[TextFragment], texts: List[str], words: List[Dict]) -> List[Dict]:
        """
        Assign aligned words back to fragments by consecutive word counts.

        Fragments whose words all lack timestamps get begin/end of None
        and are filled in by the adapter.

        Raises:
            AlignmentUnavailable: If word counts or word texts diverge
        """
        counts = [len(text.split()) for text in texts]
        if sum(counts) != len(words):
            raise AlignmentUnavailable(
                f"Aligned word count {len(words)} does not match text ({sum(counts)} words)"
            )

        entries = []
        mismatched = 0
        index = 0
        for fragment, text, count in zip(fragments, texts, counts):
            chunk = words[index:index + count]
            index += count

            aligned_text = normalize_for_matching(" ".join(w.get("word", "") for w in chunk))
            similarity = Levenshtein.ratio(aligned_text, normalize_for_matching(text))
            if similarity < self.min_similarity:
                mismatched += 1
                logger.debug(f"Word mismatch for {fragment.id} (similarity={similarity:.2f})")

            timed = [w for w in chunk if w.get("start") is not None and w.get("end") is not None]
            entries.append(
                {
                    "id": fragment.id,
                    "begin": timed[0]["start"] if timed else None,
                    "end": timed[-1]["end"] if timed else None,
                }
            )

        if fragments and mismatched > len(fragments) / 2:
            raise AlignmentUnavailable(
                f"Aligned words diverge from text for {mismatched}/{len(fragments)} fragments"
            )
        return entries

    async def align(self, audio_path: str, fragments: Sequence[TextFragment], language: str) -> List[Dict]:
        logger.info(f"Running WhisperX alignment on {len(fragments)} fragments ({self.device})")
        return await asyncio.to_thread(self._align_sync, audio_path, fragments, language)


class SilenceRefiner:
    """
    Moves aligner boundaries onto the pauses of the narration.

    Aligners tend to place boundaries a little inside speech or inside
    silence. A start is snapped to the end of a silence just before it,
    an end to the start of a silence just after it. When a pause fills
    the gap to the next fragment, the end is then extended over the pause
    so highlighting does not blink off between sentences.
    """

    def __init__(
        self,
        threshold_db: float = -40.0,
        min_silence: float = 0.1,
        snap_window: float = 0.2,
        min_pause: float = 0.15,
        loader: Optional[AudioLoader] = None,
    ):
        self.threshold_db = threshold_db
        self.min_silence = min_silence
        self.snap_window = snap_window
        self.min_pause = min_pause
        self.loader = loader or AudioLoader()

    def detect(self, audio_path: str) -> List[Tuple[float, float]]:
        return self.loader.detect_silences(audio_path, self.threshold_db, self.min_silence)

    def refine(
        self, candidates: List[AlignmentCandidate], silences: Sequence[Tuple[float, float]]
    ) -> int:
        """
        Adjust candidate boundaries in place.

        Start times stay non-decreasing and no end moves past the original
        start of the next candidate.

        Returns:
            Number of candidates whose range changed
        """
        changed = 0
        lower = 0.0

        for i, candidate in enumerate(candidates):
            start, end = candidate.start_time, candidate.end_time
            upper = candidates[i + 1].start_time if i + 1 < len(candidates) else None

            before = [s for s in silences if start - self.snap_window <= s[1] <= start and s[1] >= lower]
            if before:
                start = max(before, key=lambda s: s[1])[1]

            after = [s for s in silences if end <= s[0] <= end + self.snap_window]
            if upper is not None:
                after = [s for s in after if s[0] <= upper]
            if after:
                end = min(after, key=lambda s: s[0])[0]

            if end <= start:
                start, end = candidate.start_time, candidate.end_time

            if upper is not None and upper - end > 0.1:
                pauses = [
                    s for s in silences
                    if s[0] >= end and s[1] <= upper and s[1] - s[0] >= self.min_pause
                ]
                if pauses:
                    end = min(pauses, key=lambda s: s[0])[1]

            if (start, end) != (candidate.start_time, candidate.end_time):
                candidate.start_time = round_time(start)
                candidate.end_time = round_time(end)
                changed += 1
            lower = max(lower, candidate.end_time)

        return changed


class ForcedAlignmentAdapter:
    """
    Maps forced aligner output onto alignment candidates.

    Callers must remove unspoken fragments beforehand: the aligner
    assumes every fragment is narrated, in order, in one continuous track.
    """

    def __init__(self, backend=None, refiner: Optional[SilenceRefiner] = None):
        self.backend = backend
        self.refiner = refiner
        self._available: Optional[bool] = None

    @classmethod
    def from_config(cls, config) -> "ForcedAlignmentAdapter":
        refiner = None
        if config.silence_refinement:
            refiner = SilenceRefiner(
                threshold_db=config.silence_threshold_db,
                min_silence=config.silence_min_duration,
                snap_window=config.silence_snap_window,
            )

        if config.forced_backend == "aeneas":
            return cls(AeneasBackend(config.aeneas_python, timeout=config.forced_timeout), refiner)
        if config.forced_backend == "whisperx":
            return cls(WhisperXBackend(device=config.whisperx_device), refiner)
        return cls(None)

    async def is_available(self) -> bool:
        """Probe the backend once and cache the answer."""
        if self._available is None:
            self._available = self.backend is not None and await self.backend.is_available()
            if self.backend is not None:
                logger.info(
                    f"Forced aligner '{self.backend.name}' "
                    f"{'available' if self._available else 'unavailable'}"
                )
        return self._available

    async def align(
        self,
        audio_path: str,
        fragments: Sequence[TextFragment],
        language: str = "eng",
        audio_duration: Optional[float] = None,
    ) -> List[AlignmentCandidate]:
        """
        Align fragments against the audio track.

        Args:
            audio_path: Narration audio file
            fragments: Fragments of the whole job in document order
            language: ISO 639-3 language code
            audio_duration: Track length, used to place trailing untimed fragments

        Returns:
            One synced candidate per fragment, start times non-decreasing

        Raises:
            AlignmentUnavailable: If the tool is missing or its output is unusable
        """
        if not fragments:
            return []
        if not await self.is_available():
            raise AlignmentUnavailable("No forced aligner available")

        entries = await self.backend.align(audio_path, fragments, language)
        by_id = {entry["id"]: entry for entry in entries}

        missing = [f.id for f in fragments if f.id not in by_id]
        if missing:
            raise AlignmentUnavailable(
                f"Aligner output is missing {len(missing)} fragments (first: {missing[0]})"
            )
        if all(by_id[f.id]["begin"] is None for f in fragments):
            raise AlignmentUnavailable("Aligner returned no timestamps")

        candidates = self._to_candidates(fragments, by_id)

        unplaced = self._fill_untimed(fragments, candidates, audio_duration)
        if unplaced:
            raise AlignmentUnavailable(f"Could not place {unplaced} untimed fragments")

        if self.refiner is not None:
            await self._refine(audio_path, candidates)

        logger.info(f"Forced alignment produced {len(candidates)} candidates")
        return candidates

    async def _refine(self, audio_path: str, candidates: List[AlignmentCandidate]):
        try:
            silences = await asyncio.to_thread(self.refiner.detect, audio_path)
        except AudioLoadError as e:
            logger.warning(f"Skipping silence refinement: {e}")
            return

        changed = self.refiner.refine(candidates, silences)
        logger.info(f"Silence refinement adjusted {changed}/{len(candidates)} fragments")

    def _to_candidates(self, fragments: Sequence[TextFragment], by_id: Dict[str, Dict]) -> List[AlignmentCandidate]:
        candidates = []
        clamped = 0
        last_start = 0.0

        for fragment in fragments:
            begin = by_id[fragment.id]["begin"]
            end = by_id[fragment.id]["end"]
            if begin is not None and begin < last_start:
                begin = last_start
                clamped += 1
            if begin is not None:
                last_start = begin
                end = begin if end is None else max(end, begin)

            candidates.append(
                AlignmentCandidate(
                    fragment_id=fragment.id,
                    page_number=fragment.page_number,
                    source=AlignmentSource.FORCED_ALIGNMENT,
                    start_time=round_time(begin) if begin is not None else None,
                    end_time=round_time(end) if end is not None else None,
                    text=fragment.text,
                )
            )

        if clamped:
            logger.warning(f"Clamped {clamped} regressing start times from the aligner")
        return candidates

    @staticmethod
    def _fill_untimed(
        fragments: Sequence[TextFragment],
        candidates: List[AlignmentCandidate],
        audio_duration: Optional[float] = None,
    ) -> int:
        """
        Spread runs of fragments without timestamps over the time around them.

        A run normally fills the gap up to the next timed fragment (or the
        track end). When there is no gap, it shares the window of a timed
        neighbour. Start times stay non-decreasing.

        Returns:
            Number of fragments that could not be placed
        """
        allocator = LinearSpreadAllocator(AlignmentSource.FORCED_ALIGNMENT)
        unplaced = 0
        i = 0
        while i < len(candidates):
            if candidates[i].start_time is not None:
                i += 1
                continue

            j = i
            while j < len(candidates) and candidates[j].start_time is None:
                j += 1

            previous = candidates[i - 1] if i > 0 else None
            following = candidates[j] if j < len(candidates) else None

            if following is not None:
                limit = following.start_time
            elif audio_duration:
                limit = audio_duration
            else:
                limit = previous.end_time
            gap_start = min(previous.end_time, limit) if previous else 0.0

            if limit > gap_start:
                first, last, window = i, j, (gap_start, limit)
            elif previous is not None and limit > previous.start_time:
                first, last, window = i - 1, j, (previous.start_time, limit)
            elif following is not None and following.end_time > gap_start:
                first, last, window = i, j + 1, (gap_start, following.end_time)
            else:
                unplaced += j - i
                i = j
                continue

            spread = allocator.allocate(fragments[first:last], *window)
            for k, placed in zip(range(first, last), spread):
                candidates[k].start_time = placed.start_time
                candidates[k].end_time = placed.end_time
            logger.debug(f"Spread {j - i} untimed fragments over [{window[0]:.3f}, {window[1]:.3f}]")
            i = j

        return unplaced
