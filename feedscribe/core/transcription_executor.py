"""
Transcription Executor.
Small files go up in one request; larger ones are cut into balanced time
chunks and transcribed strictly one after another, with a fixed pause
between requests to stay under per-key rate limits.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from feedscribe.core.constants import (
    TaskStatus, MAX_UPLOAD_BYTES, CHUNK_DURATION_SEC, INTER_CHUNK_DELAY_SEC,
    NOMINAL_BITRATE_KBPS,
    PROGRESS_PROBE, PROGRESS_CHUNK_START, PROGRESS_CHUNK_END,
    PROGRESS_SINGLE_UPLOAD, PROGRESS_SINGLE_RECEIVED, PROGRESS_TRANSCRIBED,
)
from feedscribe.core.error_codes import (
    TaskError, AuthenticationError, TaskCancelled, ChunkTooLargeError, AllChunksFailedError,
)
from feedscribe.core.audio_slicer import (
    AudioSlicer, probe_duration, estimate_duration_from_size, is_wav,
)
from feedscribe.core.chunking import needs_chunking, plan_audio_chunks
from feedscribe.core.merge import join_transcripts, contiguous_transcript
from feedscribe.core.models import AudioChunk, Credential
from feedscribe.core.task_registry import TaskRegistry
from feedscribe.core.transcribe_speech import SpeechClient

logger = logging.getLogger(__name__)

_LIKELY_CAUSES = (
    "Likely causes:\n"
    "1. API quota exhausted\n"
    "2. Unsupported audio format\n"
    "3. Network connectivity problems"
)


class TranscriptionExecutor:
    """Drives slicer + speech client for one task and reports via the registry."""

    def __init__(self, registry: TaskRegistry, speech: SpeechClient, slicer: AudioSlicer,
                 max_upload_bytes: int = MAX_UPLOAD_BYTES,
                 chunk_duration_sec: float = CHUNK_DURATION_SEC,
                 inter_chunk_delay_sec: float = INTER_CHUNK_DELAY_SEC,
                 nominal_bitrate_kbps: int = NOMINAL_BITRATE_KBPS,
                 duration_probe: Callable[[Path], float] = probe_duration,
                 sleep: Optional[Callable[[float], None]] = None):
        self.registry = registry
        self.speech = speech
        self.slicer = slicer
        self.max_upload_bytes = max_upload_bytes
        self.chunk_duration_sec = chunk_duration_sec
        self.inter_chunk_delay_sec = inter_chunk_delay_sec
        self.nominal_bitrate_kbps = nominal_bitrate_kbps
        self.duration_probe = duration_probe
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, registry: TaskRegistry, speech: SpeechClient,
                    slicer: AudioSlicer, **kwargs) -> "TranscriptionExecutor":
        return cls(
            registry, speech, slicer,
            max_upload_bytes=config.get('max_upload_bytes'),
            chunk_duration_sec=config.get('chunk_duration_sec'),
            inter_chunk_delay_sec=config.get('inter_chunk_delay_sec'),
            nominal_bitrate_kbps=config.get('nominal_bitrate_kbps'),
            **kwargs,
        )

    def transcribe(self, task_id: str, media_path: Path, credential: Credential,
                   cancel_event: Optional[threading.Event] = None) -> str:
        """
        Transcribe a media file for a task. Returns the raw text and leaves
        it in the task's raw_text with progress at 100.
        """
        media_path = Path(media_path)
        cancel_event = cancel_event or threading.Event()
        file_size = media_path.stat().st_size

        self.registry.update_task(task_id, status=TaskStatus.TRANSCRIBING)

        if needs_chunking(file_size, self.max_upload_bytes):
            text = self._transcribe_in_chunks(task_id, media_path, file_size,
                                              credential, cancel_event)
        else:
            text = self._transcribe_single(task_id, media_path, credential, cancel_event)

        self.registry.update_task(task_id, raw_text=text, progress=PROGRESS_TRANSCRIBED)
        return text

    # ── Single request ────────────────────────────────────────────────

    def _transcribe_single(self, task_id: str, media_path: Path, credential: Credential,
                           cancel_event: threading.Event) -> str:
        self.registry.update_task(task_id, progress=PROGRESS_SINGLE_UPLOAD)
        text = self.speech.transcribe_file(media_path, credential, cancel_event)
        if cancel_event.is_set():
            # Upload finished after cancellation: result is discarded
            raise TaskCancelled()
        self.registry.update_task(task_id, progress=PROGRESS_SINGLE_RECEIVED)
        logger.info("Task %s: single-request transcript, %d chars", task_id, len(text))
        return text

    # ── Chunked ───────────────────────────────────────────────────────

    def media_duration(self, media_path: Path, file_size: int) -> tuple[float, bool]:
        """Return (duration_sec, estimated)."""
        duration = self.duration_probe(media_path)
        if duration and duration > 0:
            return duration, False
        estimate = estimate_duration_from_size(file_size, self.nominal_bitrate_kbps)
        logger.warning("Duration metadata unavailable for %s — estimating %.0fs from size "
                       "at %d kbps; chunk count may be off", media_path.name, estimate,
                       self.nominal_bitrate_kbps)
        return estimate, True

    def _transcribe_in_chunks(self, task_id: str, media_path: Path, file_size: int,
                              credential: Credential, cancel_event: threading.Event) -> str:
        self.registry.update_task(task_id, progress=PROGRESS_PROBE)

        duration, estimated = self.media_duration(media_path, file_size)
        chunks = plan_audio_chunks(duration, self.chunk_duration_sec)
        total = len(chunks)

        logger.info("Task %s: chunked transcription of %s (%.2f MB, %.1f min%s) → %d chunks of ~%.1f min",
                    task_id, media_path.name, file_size / 1024 / 1024, duration / 60,
                    " estimated" if estimated else "", total, chunks[0].duration / 60)

        self.registry.update_task(task_id, progress=PROGRESS_CHUNK_START,
                                  total_chunks=total, processed_chunks=0)

        texts: list[Optional[str]] = [None] * total
        failures: list[str] = []
        completed = 0

        try:
            for chunk in chunks:
                if cancel_event.is_set():
                    raise TaskCancelled()

                requested = False
                try:
                    payload = self._slice_chunk(media_path, chunk)
                    requested = True
                    text = self.speech.transcribe_bytes(
                        payload, self._chunk_filename(chunk, payload, media_path),
                        credential, cancel_event,
                    )
                except AuthenticationError:
                    logger.error("Task %s: credential rejected on chunk %d/%d — aborting",
                                 task_id, chunk.index + 1, total)
                    raise
                except TaskCancelled:
                    raise
                except (TaskError, OSError) as e:
                    reason = e.message if isinstance(e, TaskError) else str(e)
                    failures.append(f"Chunk {chunk.index + 1}: {reason}")
                    texts[chunk.index] = None
                    logger.warning("Task %s: chunk %d/%d failed: %s",
                                   task_id, chunk.index + 1, total, reason)
                else:
                    if cancel_event.is_set():
                        raise TaskCancelled()
                    texts[chunk.index] = text
                    completed += 1
                    logger.info("Task %s: chunk %d/%d done, %d chars",
                                task_id, chunk.index + 1, total, len(text))

                progress = PROGRESS_CHUNK_START + round(
                    completed / total * (PROGRESS_CHUNK_END - PROGRESS_CHUNK_START))
                self.registry.update_task(
                    task_id, progress=progress, processed_chunks=completed,
                    raw_text=contiguous_transcript(texts),
                )

                if requested and chunk.index < total - 1:
                    self._pause(cancel_event)
        except TaskCancelled:
            # Keep whatever was transcribed before the cancel
            self.registry.update_task(task_id, raw_text=join_transcripts(texts))
            raise

        self.registry.update_task(task_id, progress=PROGRESS_CHUNK_END)

        if completed == 0:
            detail = "\n".join(failures) if failures else "no chunk produced a transcript"
            raise AllChunksFailedError(
                f"Transcription failed: all {total} chunks failed.\n"
                f"Details:\n{detail}\n\n{_LIKELY_CAUSES}",
                failures=failures,
            )

        if completed < total:
            warning = f"Transcribed {completed}/{total} chunks; {total - completed} failed"
            logger.warning("Task %s: %s: %s", task_id, warning, "; ".join(failures))
            self.registry.update_task(task_id, warning=warning)

        return join_transcripts(texts)

    def _slice_chunk(self, media_path: Path, chunk: AudioChunk) -> bytes:
        payload = self.slicer.slice(media_path, chunk.start_time, chunk.end_time)
        if len(payload) > self.max_upload_bytes:
            raise ChunkTooLargeError(
                f"Chunk too large ({len(payload) / 1024 / 1024:.1f}MB > "
                f"{self.max_upload_bytes / 1024 / 1024:.0f}MB)")
        return payload

    @staticmethod
    def _chunk_filename(chunk: AudioChunk, payload: bytes, media_path: Path) -> str:
        suffix = ".wav" if is_wav(payload) else (media_path.suffix or ".bin")
        return f"chunk_{chunk.index}{suffix}"

    def _pause(self, cancel_event: threading.Event):
        if self.inter_chunk_delay_sec <= 0:
            return
        if self._sleep is not None:
            self._sleep(self.inter_chunk_delay_sec)
        elif cancel_event.wait(self.inter_chunk_delay_sec):
            raise TaskCancelled()
