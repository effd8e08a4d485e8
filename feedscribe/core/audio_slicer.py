"""
Audio slicing for chunked transcription.
Decode a time range with ffmpeg → downmix to mono → linear resample to
16 kHz → 16-bit PCM WAV. Output size is roughly 32 KB per second.
"""

import io
import json
import logging
import math
import wave
from pathlib import Path

import numpy as np

from feedscribe.core.security_utils import run_subprocess_capture, run_subprocess_binary
from feedscribe.core.error_codes import SliceError, ChunkTooLargeError
from feedscribe.core.constants import (
    TARGET_SAMPLE_RATE, TARGET_CHANNELS, TARGET_SAMPLE_WIDTH,
    MAX_UPLOAD_BYTES, NOMINAL_BITRATE_KBPS,
)

logger = logging.getLogger(__name__)


class DecodeError(Exception):
    """ffmpeg/ffprobe could not read the source at all."""


# ── Probing ───────────────────────────────────────────────────────────

def probe_duration(media_path: Path) -> float:
    """Get media duration in seconds using ffprobe. Returns 0.0 when unknown."""
    args = [
        "ffprobe",
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(media_path),
    ]

    try:
        result = run_subprocess_capture(args, timeout=30)
        if result.returncode == 0:
            return float(result.stdout.strip())
    except (OSError, ValueError) as e:
        logger.debug("ffprobe duration failed for %s: %s", media_path, e)
    except Exception as e:
        logger.warning("ffprobe duration failed for %s: %s", media_path, e)

    return 0.0


def estimate_duration_from_size(file_size: int, bitrate_kbps: int = NOMINAL_BITRATE_KBPS) -> float:
    """
    Approximate duration from byte size at a nominal bitrate.
    This is an estimate, not a measurement: VBR, video tracks and
    lossless formats can put it off by a wide margin.
    """
    return (file_size * 8) / (bitrate_kbps * 1024)


def probe_stream(media_path: Path) -> tuple[int, int]:
    """Return (sample_rate, channels) of the first audio stream."""
    args = [
        "ffprobe",
        "-v", "error",
        "-select_streams", "a:0",
        "-show_entries", "stream=sample_rate,channels",
        "-of", "json",
        str(media_path),
    ]
    try:
        result = run_subprocess_capture(args, timeout=30)
    except Exception as e:
        raise DecodeError(f"ffprobe failed: {e}") from e

    if result.returncode != 0:
        raise DecodeError(f"ffprobe failed (rc={result.returncode}): {(result.stderr or '')[:200]}")

    try:
        streams = json.loads(result.stdout or '{}').get('streams') or []
        stream = streams[0]
        sample_rate = int(stream['sample_rate'])
        channels = int(stream['channels'])
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise DecodeError("No decodable audio stream found") from e

    if sample_rate <= 0 or channels <= 0:
        raise DecodeError(f"Invalid stream parameters: {sample_rate} Hz, {channels} ch")
    return sample_rate, channels


# ── Sample processing ─────────────────────────────────────────────────

def decode_range(media_path: Path, start_time: float, duration: float,
                 sample_rate: int, channels: int) -> np.ndarray:
    """
    Decode [start, start + duration) to float32 samples at the source rate.
    Returns an array of shape (frames, channels).
    """
    args = [
        "ffmpeg",
        "-v", "error",
        "-ss", f"{start_time:.3f}",
        "-t", f"{duration:.3f}",
        "-i", str(media_path),
        "-vn",
        "-f", "f32le",
        "-acodec", "pcm_f32le",
        "-ar", str(sample_rate),
        "-ac", str(channels),
        "pipe:1",
    ]

    try:
        result = run_subprocess_binary(args, timeout=600)
    except Exception as e:
        raise DecodeError(f"ffmpeg decode failed: {e}") from e

    if result.returncode != 0:
        stderr = (result.stderr or b'').decode('utf-8', errors='replace')
        raise DecodeError(f"ffmpeg failed (rc={result.returncode}): {stderr[:300]}")

    raw = result.stdout or b''
    usable = len(raw) - (len(raw) % (4 * channels))
    samples = np.frombuffer(raw[:usable], dtype='<f4')
    return samples.reshape(-1, channels)


def downmix_to_mono(samples: np.ndarray) -> np.ndarray:
    """Average all channels into one."""
    if samples.ndim == 1:
        return samples.astype(np.float32, copy=False)
    return samples.mean(axis=1, dtype=np.float64).astype(np.float32)


def resample_linear(signal: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Linear-interpolation resample. Good enough for speech recognition."""
    if signal.size == 0 or src_rate == dst_rate:
        return signal.astype(np.float32, copy=False)
    src_len = signal.size
    dst_len = max(1, int(math.floor(src_len * float(dst_rate) / float(src_rate))))
    src_x = np.arange(src_len, dtype=np.float64) / float(src_rate)
    dst_x = np.arange(dst_len, dtype=np.float64) / float(dst_rate)
    out = np.interp(dst_x, src_x, signal.astype(np.float64))
    return out.astype(np.float32, copy=False)


def float_to_pcm16(signal: np.ndarray) -> np.ndarray:
    clipped = np.clip(signal, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return scaled.astype('<i2')


def encode_wav(signal: np.ndarray, sample_rate: int = TARGET_SAMPLE_RATE) -> bytes:
    """Mono 16-bit PCM WAV with a correct RIFF header."""
    buf = io.BytesIO()
    with wave.open(buf, 'wb') as wf:
        wf.setnchannels(TARGET_CHANNELS)
        wf.setsampwidth(TARGET_SAMPLE_WIDTH)
        wf.setframerate(sample_rate)
        wf.writeframes(float_to_pcm16(signal).tobytes())
    return buf.getvalue()


def is_wav(data: bytes) -> bool:
    return len(data) >= 12 and data[:4] == b'RIFF' and data[8:12] == b'WAVE'


def expected_wav_size(duration_sec: float, sample_rate: int = TARGET_SAMPLE_RATE) -> int:
    """Header + payload bytes for a mono 16-bit WAV of the given duration."""
    return 44 + int(duration_sec * sample_rate) * TARGET_SAMPLE_WIDTH


# ── Slicer ────────────────────────────────────────────────────────────

class AudioSlicer:
    """
    Cuts one time range out of a media file as transport-ready WAV bytes.
    Decoding is CPU-bound and runs on the task's worker thread.
    """

    def __init__(self, target_sample_rate: int = TARGET_SAMPLE_RATE,
                 max_upload_bytes: int = MAX_UPLOAD_BYTES):
        self.target_sample_rate = target_sample_rate
        self.max_upload_bytes = max_upload_bytes

    @classmethod
    def from_config(cls, config) -> "AudioSlicer":
        return cls(
            target_sample_rate=config.get('target_sample_rate'),
            max_upload_bytes=config.get('max_upload_bytes'),
        )

    def slice(self, media_path: Path, start_time: float, end_time: float) -> bytes:
        """
        Return WAV bytes for [start_time, end_time).
        Raises SliceError for an empty range or an undecodable source that
        is too large to upload whole, and ChunkTooLargeError before decoding
        a range whose WAV would not fit under the upload cap.
        """
        media_path = Path(media_path)
        try:
            sample_rate, channels = probe_stream(media_path)
            return self._slice_decoded(media_path, start_time, end_time, sample_rate, channels)
        except DecodeError as e:
            return self._fallback_original(media_path, e)

    def _slice_decoded(self, media_path: Path, start_time: float, end_time: float,
                       sample_rate: int, channels: int) -> bytes:
        start_sample = int(math.floor(start_time * sample_rate))
        end_sample = int(math.floor(end_time * sample_rate))
        length = end_sample - start_sample

        if length <= 0:
            raise SliceError(
                f"Invalid time range {start_time:.2f}s–{end_time:.2f}s "
                f"(start sample {start_sample}, end sample {end_sample})")

        expected = expected_wav_size(length / sample_rate, self.target_sample_rate)
        if expected > self.max_upload_bytes:
            raise ChunkTooLargeError(
                f"Chunk {start_time:.0f}s-{end_time:.0f}s would encode to "
                f"{expected / 1024 / 1024:.2f} MB, above the "
                f"{self.max_upload_bytes / 1024 / 1024:.0f} MB upload limit")

        samples = decode_range(media_path, start_sample / sample_rate,
                               length / sample_rate, sample_rate, channels)
        samples = samples[:length]

        if samples.shape[0] == 0:
            raise SliceError(
                f"No audio decoded between {start_time:.2f}s and {end_time:.2f}s "
                f"— the range may lie past the end of the file")

        mono = downmix_to_mono(samples)
        resampled = resample_linear(mono, sample_rate, self.target_sample_rate)
        data = encode_wav(resampled, self.target_sample_rate)

        logger.info("Sliced %.1f–%.1f min: %d Hz x%d → %d Hz mono, %.2f MB",
                    start_time / 60, end_time / 60, sample_rate, channels,
                    self.target_sample_rate, len(data) / 1024 / 1024)
        return data

    def _fallback_original(self, media_path: Path, error: Exception) -> bytes:
        """Undecodable source: send it whole if it fits, otherwise fail the chunk."""
        size = media_path.stat().st_size
        if size <= self.max_upload_bytes:
            logger.warning("Could not decode %s (%s) — sending the original file unsliced",
                           media_path.name, error)
            return media_path.read_bytes()
        raise SliceError(
            f"Unable to decode audio ({error}); convert the file to MP3 or WAV and retry")
