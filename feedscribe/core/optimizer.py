"""
Text Optimization Engine.
Short transcripts go to the model in one streamed request. Longer ones are
cut into fixed-size character chunks and optimized with bounded
concurrency; live output only ever shows chunks 0..k contiguously, so a
fast later chunk never appears ahead of an earlier one.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional

from feedscribe.core.ai_client import ChatClient
from feedscribe.core.chunking import needs_text_chunking, split_text
from feedscribe.core.constants import (
    OPTIMIZE_CHUNK_CHARS, OPTIMIZE_SINGLE_MAX_CHARS, OPTIMIZE_CONCURRENCY,
    PROGRESS_THROTTLE_SEC, OPTIMIZED_CHUNK_SEPARATOR,
)
from feedscribe.core.error_codes import (
    TaskError, TaskCancelled, AllChunksFailedError, AuthenticationError,
)
from feedscribe.core.merge import merge_contiguous_prefix, merge_all_in_order, parse_titled_response
from feedscribe.core.models import OptimizationTarget, OptimizeResult, TextChunk
from feedscribe.core.prompts import chunk_prompt, titled_prompt, truncate_for_single_request

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str], None]   # (title, content)


class TextOptimizer:
    """Turns a raw transcript into a titled, corrected text."""

    def __init__(self, chat: ChatClient,
                 chunk_chars: int = OPTIMIZE_CHUNK_CHARS,
                 single_max_chars: int = OPTIMIZE_SINGLE_MAX_CHARS,
                 concurrency: int = OPTIMIZE_CONCURRENCY,
                 throttle_sec: float = PROGRESS_THROTTLE_SEC,
                 clock: Callable[[], float] = time.monotonic):
        self.chat = chat
        self.chunk_chars = chunk_chars
        self.single_max_chars = single_max_chars
        self.concurrency = max(1, concurrency)
        self.throttle_sec = throttle_sec
        self._clock = clock

    @classmethod
    def from_config(cls, config, chat: ChatClient, **kwargs) -> "TextOptimizer":
        return cls(
            chat,
            chunk_chars=config.get('optimize_chunk_chars'),
            single_max_chars=config.get('optimize_single_max_chars'),
            concurrency=config.get('optimize_concurrency'),
            throttle_sec=config.get('progress_throttle_sec'),
            **kwargs,
        )

    def chunk_info(self, text: str) -> list[TextChunk]:
        """The chunks optimize() would dispatch for this text (one chunk when short)."""
        if not needs_text_chunking(text, self.chunk_chars):
            return [TextChunk(index=0, text=text, is_last=True)] if text else []
        return split_text(text, self.chunk_chars)

    def optimize(self, text: str, target: OptimizationTarget,
                 on_progress: Optional[ProgressCallback] = None,
                 cancel_event: Optional[threading.Event] = None) -> OptimizeResult:
        """
        Optimize `text` with the target model.
        on_progress(title, content) receives partial results while the
        model streams. Raises TaskCancelled, AllChunksFailedError, or the
        single request's TaskError.
        """
        cancel_event = cancel_event or threading.Event()
        on_progress = on_progress or (lambda title, content: None)

        if needs_text_chunking(text, self.chunk_chars):
            return self._optimize_chunked(text, target, on_progress, cancel_event)
        return self._optimize_single(text, target, on_progress, cancel_event)

    # ── Single request ────────────────────────────────────────────────

    def _optimize_single(self, text: str, target: OptimizationTarget,
                         on_progress: ProgressCallback,
                         cancel_event: threading.Event) -> OptimizeResult:
        source = truncate_for_single_request(text, self.single_max_chars)
        if len(source) < len(text):
            logger.warning("Input truncated from %d to %d chars for a single request",
                           len(text), self.single_max_chars)

        full = ''
        for delta in self.chat.generate(titled_prompt(), source, target, cancel_event):
            full += delta
            on_progress(*parse_titled_response(full))

        if cancel_event.is_set():
            raise TaskCancelled()

        title, content = parse_titled_response(full)
        logger.info("Optimized %d chars in one request → %d chars, title %r",
                    len(text), len(content), title)
        return OptimizeResult(title=title, content=content)

    # ── Chunked ───────────────────────────────────────────────────────

    def _optimize_chunked(self, text: str, target: OptimizationTarget,
                          on_progress: ProgressCallback,
                          cancel_event: threading.Event) -> OptimizeResult:
        chunks = split_text(text, self.chunk_chars)
        run = _ChunkedRun(len(chunks), on_progress, self.throttle_sec, self._clock)

        logger.info("Optimizing %d chars in %d chunks (max %d concurrent)",
                    len(text), len(chunks), self.concurrency)

        with ThreadPoolExecutor(max_workers=self.concurrency,
                                thread_name_prefix="optimize") as pool:
            futures = {
                pool.submit(self._run_chunk, chunk, len(chunks), target, run, cancel_event): chunk
                for chunk in chunks
            }
            for future in as_completed(futures):
                chunk = futures[future]
                try:
                    future.result()
                except TaskCancelled:
                    pass
                except AuthenticationError as e:
                    logger.error("Optimization chunk %d/%d: credential rejected, aborting run: %s",
                                 chunk.index + 1, len(chunks), e.message)
                    for pending in futures:
                        pending.cancel()
                    break
                except TaskError as e:
                    run.fail(chunk.index, e.message)
                    logger.warning("Optimization chunk %d/%d failed: %s",
                                   chunk.index + 1, len(chunks), e.message)

        if run.auth_error is not None:
            raise run.auth_error

        if cancel_event.is_set():
            run.emit(force=True)
            raise TaskCancelled()

        if not run.completed:
            details = "\n".join(f"Chunk {idx + 1}: {msg}" for idx, msg in sorted(run.errors.items()))
            raise AllChunksFailedError(
                f"Optimization failed: all {len(chunks)} chunks failed.\nDetails:\n{details}",
                failures=[run.errors[idx] for idx in sorted(run.errors)],
            )

        content = merge_all_in_order(run.completed, len(chunks), OPTIMIZED_CHUNK_SEPARATOR)
        on_progress(run.title, content)

        result = OptimizeResult(
            title=run.title,
            content=content,
            failed_chunks=sorted(run.errors),
            chunk_errors=dict(run.errors),
        )
        if result.partial:
            logger.warning("Optimization finished with %d/%d chunks missing: %s",
                           len(result.failed_chunks), len(chunks),
                           [idx + 1 for idx in result.failed_chunks])
        return result

    def _run_chunk(self, chunk: TextChunk, total: int, target: OptimizationTarget,
                   run: "_ChunkedRun", cancel_event: threading.Event):
        if cancel_event.is_set() or run.aborted.is_set():
            raise TaskCancelled()

        full = ''
        try:
            for delta in self.chat.generate(chunk_prompt(chunk.index, total), chunk.text,
                                            target, cancel_event):
                if run.aborted.is_set():
                    raise TaskCancelled()
                full += delta
                run.update(chunk.index, *self._parse_chunk(chunk.index, full))
        except AuthenticationError as e:
            # Set before this future completes so no queued chunk starts with the rejected key
            run.abort(e)
            raise

        if cancel_event.is_set() or run.aborted.is_set():
            raise TaskCancelled()
        run.complete(chunk.index, *self._parse_chunk(chunk.index, full))

    @staticmethod
    def _parse_chunk(index: int, full: str) -> tuple[str, str]:
        if index == 0:
            return parse_titled_response(full)
        return '', full.strip()


class _ChunkedRun:
    """Shared state of one chunked optimization, guarded by a lock."""

    def __init__(self, total: int, on_progress: ProgressCallback,
                 throttle_sec: float, clock: Callable[[], float]):
        self.total = total
        self.title = ''
        self.partial: dict[int, str] = {}
        self.completed: dict[int, str] = {}
        self.errors: dict[int, str] = {}
        self.aborted = threading.Event()
        self.auth_error: Optional[AuthenticationError] = None
        self._on_progress = on_progress
        self._throttle_sec = throttle_sec
        self._clock = clock
        self._last_emit: Optional[float] = None
        self._lock = threading.Lock()

    def update(self, index: int, title: str, content: str):
        with self._lock:
            if index == 0:
                self.title = title
            self.partial[index] = content
            self._emit_locked(force=False)

    def complete(self, index: int, title: str, content: str):
        with self._lock:
            if index == 0:
                self.title = title
            self.partial[index] = content
            self.completed[index] = content
            self._emit_locked(force=False)

    def fail(self, index: int, message: str):
        with self._lock:
            # A failed chunk is a hole: the live prefix stops before it
            self.partial.pop(index, None)
            self.errors[index] = message

    def abort(self, error: AuthenticationError):
        with self._lock:
            if self.auth_error is None:
                self.auth_error = error
        self.aborted.set()

    def emit(self, force: bool = False):
        with self._lock:
            self._emit_locked(force)

    def _emit_locked(self, force: bool):
        now = self._clock()
        if not force and self._last_emit is not None and now - self._last_emit < self._throttle_sec:
            return
        self._last_emit = now
        self._on_progress(self.title, merge_contiguous_prefix(self.partial, self.total))
