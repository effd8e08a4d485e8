"""
Chunk planning for both phases.
- Audio: balanced time ranges when the upload exceeds the endpoint cap.
- Text: fixed-size character slices (no sentence-boundary awareness).
"""

import math
import logging

from feedscribe.core.constants import (
    MAX_UPLOAD_BYTES, CHUNK_DURATION_SEC, OPTIMIZE_CHUNK_CHARS,
)
from feedscribe.core.models import AudioChunk, TextChunk

logger = logging.getLogger(__name__)


def needs_chunking(file_size: int, max_upload_bytes: int = MAX_UPLOAD_BYTES) -> bool:
    """Check if a media file must be sliced before upload."""
    return file_size > max_upload_bytes


def plan_audio_chunks(duration_sec: float,
                      chunk_duration_sec: float = CHUNK_DURATION_SEC) -> list[AudioChunk]:
    """
    Split [0, duration) into ceil(duration / chunk_duration) equal spans.
    The span length is recomputed as duration / count so the last chunk
    is not a tiny remainder. Spans are contiguous with no overlap.
    """
    if duration_sec <= 0:
        raise ValueError(f"duration must be positive, got {duration_sec}")
    if chunk_duration_sec <= 0:
        raise ValueError(f"chunk duration must be positive, got {chunk_duration_sec}")

    count = max(1, math.ceil(duration_sec / chunk_duration_sec))
    span = duration_sec / count

    chunks = []
    for idx in range(count):
        start = idx * span
        # Pin the final edge to the exact duration so float drift can't leave a gap
        end = duration_sec if idx == count - 1 else (idx + 1) * span
        chunks.append(AudioChunk(index=idx, start_time=start, end_time=end))

    logger.debug("Planned %d chunks of %.1fs for %.1fs of audio", count, span, duration_sec)
    return chunks


def needs_text_chunking(text: str, threshold: int = OPTIMIZE_CHUNK_CHARS) -> bool:
    """Text longer than the threshold is optimized in concurrent chunks."""
    return len(text) > threshold


def split_text(text: str, chunk_chars: int = OPTIMIZE_CHUNK_CHARS) -> list[TextChunk]:
    """Fixed-size character slices, in order."""
    if chunk_chars <= 0:
        raise ValueError(f"chunk size must be positive, got {chunk_chars}")
    chunks = []
    for offset in range(0, len(text), chunk_chars):
        end = min(offset + chunk_chars, len(text))
        chunks.append(TextChunk(index=len(chunks), text=text[offset:end], is_last=end >= len(text)))
    return chunks

