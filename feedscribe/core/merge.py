"""
Merge chunk outputs back into one text, strictly in index order.
"""

import logging
from typing import Mapping, Optional, Sequence

from feedscribe.core.constants import OPTIMIZED_CHUNK_SEPARATOR, TRANSCRIPT_CHUNK_SEPARATOR

logger = logging.getLogger(__name__)


def merge_contiguous_prefix(results: Mapping[int, str], total: int,
                            separator: str = OPTIMIZED_CHUNK_SEPARATOR) -> str:
    """
    Join chunk outputs 0..k where every one of 0..k has produced text.
    Stops at the first missing or empty chunk so a later chunk never
    shows up ahead of an earlier one.
    """
    parts = []
    for idx in range(total):
        content = results.get(idx)
        if not content:
            break
        parts.append(content)
    return separator.join(parts)


def merge_all_in_order(results: Mapping[int, str], total: int,
                       separator: str = OPTIMIZED_CHUNK_SEPARATOR) -> str:
    """Join every non-empty chunk output in index order, skipping gaps."""
    parts = [results[idx] for idx in range(total) if results.get(idx)]
    return separator.join(parts)


def join_transcripts(texts: Sequence[Optional[str]],
                     separator: str = TRANSCRIPT_CHUNK_SEPARATOR) -> str:
    """Join chunk transcripts in order, dropping empty/failed chunks."""
    return separator.join(t for t in texts if t)


def contiguous_transcript(texts: Sequence[Optional[str]],
                          separator: str = TRANSCRIPT_CHUNK_SEPARATOR) -> str:
    """
    Transcript of completed chunks from index 0 up to the first gap.
    None marks a gap; an empty string is a finished chunk with no speech.
    """
    parts = []
    for text in texts:
        if text is None:
            break
        if text:
            parts.append(text)
    return separator.join(parts)


def parse_titled_response(full_text: str) -> tuple[str, str]:
    """
    Split a model reply of the form "title\\n\\ncontent".
    Line 1 is the title; leading blank lines are skipped before the content.
    Safe to call on a partial, still-streaming reply.
    """
    lines = full_text.split('\n')
    title = lines[0].strip() if lines else ''
    start = 1
    while start < len(lines) and lines[start].strip() == '':
        start += 1
    content = '\n'.join(lines[start:]).strip()
    return title, content
