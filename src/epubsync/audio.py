"""
Audio helpers for epubsync.

Reads narration metadata (duration is required by every strategy and
by validation), prepares 16kHz mono waveforms for the in-process
aligner, finds silent periods used to refine aligner boundaries, and
resolves MIME types for uploads to the semantic service.
"""

import mimetypes
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import soundfile as sf
import torch
import torchaudio

from .utils import AudioLoadError, format_duration, get_file_size_mb, get_logger, validate_file_exists

logger = get_logger(__name__)

AUDIO_MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".aac": "audio/aac",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
}


class AudioLoader:
    """
    Loads narration audio and prepares it for alignment.

    Waveforms are returned as 16kHz mono float arrays, which is what the
    wav2vec2 alignment models expect.
    """

    def __init__(self, target_sample_rate: int = 16000):
        self.target_sample_rate = target_sample_rate

    def get_audio_info(self, audio_path: str) -> Dict:
        """
        Get audio file metadata without decoding the samples.

        Args:
            audio_path: Path to audio file

        Returns:
            Dictionary with path, sample_rate, num_channels, duration and file_size_mb

        Raises:
            AudioLoadError: If the file is missing or unreadable
        """
        if not validate_file_exists(audio_path):
            raise AudioLoadError(f"Audio file not found: {audio_path}")

        try:
            info = sf.info(audio_path)
        except Exception as e:
            raise AudioLoadError(f"Failed to read audio metadata: {e}")

        duration = info.frames / info.samplerate
        metadata = {
            "path": str(Path(audio_path).resolve()),
            "sample_rate": info.samplerate,
            "num_channels": info.channels,
            "duration": duration,
            "duration_formatted": format_duration(duration),
            "file_size_mb": get_file_size_mb(audio_path),
            "mime_type": audio_mime_type(audio_path),
        }

        logger.info(
            f"Audio info: {metadata['duration_formatted']} @ {metadata['sample_rate']}Hz, "
            f"{metadata['num_channels']} channels, {metadata['file_size_mb']}MB"
        )
        return metadata

    def load_waveform(self, audio_path: str) -> np.ndarray:
        """
        Load, downmix and resample an audio file.

        Args:
            audio_path: Path to audio file

        Returns:
            1-D float32 numpy array at the target sample rate

        Raises:
            AudioLoadError: If audio cannot be loaded or resampled
        """
        if not validate_file_exists(audio_path):
            raise AudioLoadError(f"Audio file not found: {audio_path}")

        try:
            audio_data, sample_rate = sf.read(audio_path, always_2d=True, dtype="float32")
        except Exception as e:
            raise AudioLoadError(f"Failed to load audio file: {e}")

        # [channels, samples]
        waveform = torch.from_numpy(audio_data.T).float()
        if waveform.shape[0] > 1:
            waveform = torch.mean(waveform, dim=0, keepdim=True)

        if sample_rate != self.target_sample_rate:
            try:
                resampler = torchaudio.transforms.Resample(
                    orig_freq=sample_rate, new_freq=self.target_sample_rate
                )
                waveform = resampler(waveform)
            except Exception as e:
                raise AudioLoadError(f"Failed to resample audio: {e}")
            logger.debug(f"Resampled audio from {sample_rate}Hz to {self.target_sample_rate}Hz")

        audio_np = waveform.squeeze(0).cpu().numpy()
        logger.debug(
            f"Prepared waveform: {len(audio_np)} samples @ {self.target_sample_rate}Hz "
            f"({format_duration(len(audio_np) / self.target_sample_rate)})"
        )
        return audio_np

    def detect_silences(
        self,
        audio_path: str,
        threshold_db: float = -40.0,
        min_duration: float = 0.1,
    ) -> List[Tuple[float, float]]:
        """Load an audio file and return its silent periods (see detect_silences)."""
        waveform = self.load_waveform(audio_path)
        return detect_silences(waveform, self.target_sample_rate, threshold_db, min_duration)


def audio_mime_type(audio_path: str) -> str:
    """
    Resolve the MIME type sent along with uploaded audio.

    Example:
        >>> audio_mime_type("book.mp3")
        'audio/mpeg'
    """
    suffix = Path(audio_path).suffix.lower()
    if suffix in AUDIO_MIME_TYPES:
        return AUDIO_MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(audio_path)
    return guessed or "application/octet-stream"


def get_audio_duration(audio_path: str, fallback: Optional[float] = None) -> float:
    """
    Read the duration of an audio file in seconds.

    Args:
        audio_path: Path to audio file
        fallback: Returned instead of raising when the file cannot be decoded

    Returns:
        Duration in seconds
    """
    try:
        return AudioLoader().get_audio_info(audio_path)["duration"]
    except AudioLoadError:
        if fallback is None:
            raise
        logger.warning(f"Could not read duration of {audio_path}, using {fallback:.3f}s")
        return fallback


def detect_silences(
    waveform: np.ndarray,
    sample_rate: int,
    threshold_db: float = -40.0,
    min_duration: float = 0.1,
    frame_seconds: float = 0.02,
) -> List[Tuple[float, float]]:
    """
    Find silent periods in a mono waveform.

    The waveform is cut into short frames; a frame is silent when its RMS
    level is below threshold_db (relative to full scale). Consecutive
    silent frames form a period, kept when it lasts at least min_duration.

    Args:
        waveform: 1-D float samples in [-1, 1]
        sample_rate: Samples per second
        threshold_db: Silence threshold in dBFS
        min_duration: Shortest period reported, in seconds
        frame_seconds: Analysis frame length

    Returns:
        List of (start, end) periods in seconds, in time order
    """
    frame_length = max(1, int(sample_rate * frame_seconds))
    num_frames = int(np.ceil(len(waveform) / frame_length))
    if num_frames == 0:
        return []

    padded = np.zeros(num_frames * frame_length, dtype=np.float64)
    padded[: len(waveform)] = waveform
    frames = padded.reshape(num_frames, frame_length)

    rms = np.sqrt(np.mean(frames ** 2, axis=1))
    levels_db = 20.0 * np.log10(np.maximum(rms, 1e-10))
    silent = levels_db < threshold_db

    # Run boundaries: +1 where a silent run starts, -1 where it ends
    edges = np.diff(np.concatenate(([0], silent.astype(np.int8), [0])))
    starts = np.flatnonzero(edges == 1)
    ends = np.flatnonzero(edges == -1)

    total = len(waveform) / sample_rate
    periods = []
    for first, last in zip(starts, ends):
        start = first * frame_length / sample_rate
        end = min(last * frame_length / sample_rate, total)
        if end - start >= min_duration:
            periods.append((round(start, 3), round(end, 3)))

    logger.debug(f"Detected {len(periods)} silent periods below {threshold_db}dB")
    return periods
