"""
Transcription Service.
Caller-facing façade: resolves credentials, creates tasks, and runs each
task on its own daemon worker thread (transcription, then optional
optimization). Construct once, call init(), inject where needed.
"""

import logging
import shutil
import threading
import uuid
from pathlib import Path
from typing import Callable, Optional

import requests

from feedscribe.core.ai_client import ChatClient
from feedscribe.core.audio_slicer import AudioSlicer
from feedscribe.core.config import AppConfig
from feedscribe.core.constants import TaskStatus, DEFAULT_CREDENTIAL_ID, PROGRESS_TRANSCRIBED
from feedscribe.core.credential_pool import CredentialPool, InMemoryCredentialPool
from feedscribe.core.error_codes import TaskError, TaskCancelled, ConfigurationError
from feedscribe.core.http_retry import RetryingHttpClient
from feedscribe.core.model_registry import ModelRegistry
from feedscribe.core.models import Credential, OptimizationTarget, Task, TaskChange
from feedscribe.core.optimizer import TextOptimizer
from feedscribe.core.security_utils import mask_secret
from feedscribe.core.task_registry import TaskRegistry, EventStream
from feedscribe.core.transcribe_speech import SpeechClient
from feedscribe.core.transcription_executor import TranscriptionExecutor

logger = logging.getLogger(__name__)

TranscribeCallback = Callable[[Task], None]
OptimizeCallback = Callable[[str, str], None]   # (title, content)


class TranscriptionService:
    """
    Runs transcription and optimization tasks in the background.
    Any number of tasks may run at once; each is bound to one credential.
    """

    def __init__(self, config: AppConfig,
                 pool: Optional[CredentialPool] = None,
                 registry: Optional[TaskRegistry] = None,
                 session: Optional[requests.Session] = None,
                 slicer: Optional[AudioSlicer] = None,
                 sleep: Optional[Callable[[float], None]] = None,
                 duration_probe: Optional[Callable[[Path], float]] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.config = config
        self.pool = pool
        self.registry = registry or TaskRegistry()
        self.models = ModelRegistry(config)

        self.http = RetryingHttpClient.from_config(config, session=session, sleep=sleep)
        self.speech = SpeechClient.from_config(config, self.http)
        self.slicer = slicer or AudioSlicer.from_config(config)

        executor_kwargs = {'sleep': sleep}
        if duration_probe is not None:
            executor_kwargs['duration_probe'] = duration_probe
        self.executor = TranscriptionExecutor.from_config(
            config, self.registry, self.speech, self.slicer, **executor_kwargs)

        self.chat = ChatClient.from_config(config, self.http)
        optimizer_kwargs = {'clock': clock} if clock is not None else {}
        self.optimizer = TextOptimizer.from_config(config, self.chat, **optimizer_kwargs)

        self._workers: dict[str, threading.Thread] = {}
        self._workers_lock = threading.Lock()
        self._initialized = False

    # ── Lifecycle ─────────────────────────────────────────────────────

    def init(self) -> "TranscriptionService":
        """Load the credential pool and check external tools. Safe to call twice."""
        if self._initialized:
            return self
        if self.pool is None:
            self.pool = InMemoryCredentialPool.from_config(self.config)

        for tool in ("ffmpeg", "ffprobe"):
            found = shutil.which(tool)
            if found:
                logger.info("%s found at: %s", tool, found)
            else:
                logger.warning("%s not found on PATH — large files cannot be sliced", tool)

        logger.info("Service ready: %d credential(s) in pool, model %s",
                    len(self.pool.get_all_credentials()), self.config.get('ai_model'))
        self._initialized = True
        return self

    def _require_init(self):
        if not self._initialized:
            raise RuntimeError("TranscriptionService.init() has not been called")

    # ── Credentials ───────────────────────────────────────────────────

    def resolve_credential(self, credential_id: Optional[str] = None) -> Credential:
        """
        Explicit id → that pool entry. Otherwise the least-busy pool entry,
        falling back to the single configured speech key.
        """
        self._require_init()
        if credential_id:
            cred = self.pool.get_credential(credential_id)
            if cred is None:
                raise ConfigurationError(f"Credential '{credential_id}' does not exist")
            return cred

        cred = self.pool.get_next_credential()
        if cred is not None:
            return cred

        key = self.config.speech_api_key()
        if not key:
            raise ConfigurationError("No speech API key configured")
        return Credential(id=DEFAULT_CREDENTIAL_ID, key=key,
                          model_id=self.config.get('speech_model'), name='default')

    def active_tasks_by_credential(self) -> dict[str, list[str]]:
        """Active transcription task ids grouped by the credential they hold."""
        grouped: dict[str, list[str]] = {}
        for task in self.registry.list_active_tasks():
            if task.credential_id is None:
                continue
            grouped.setdefault(task.credential_id, []).append(task.id)
        return grouped

    def pool_stats(self) -> dict:
        self._require_init()
        return self.pool.stats()

    # ── Transcription ─────────────────────────────────────────────────

    def transcribe(self, file_path, auto_optimize: bool = False,
                   on_complete: Optional[TranscribeCallback] = None,
                   credential_id: Optional[str] = None) -> str:
        """
        Start transcribing a media file in the background. Returns the task id.
        Configuration problems raise here, before any task is created.
        """
        self._require_init()
        media_path = Path(file_path)
        if not media_path.is_file():
            raise FileNotFoundError(f"Media file not found: {media_path}")

        credential = self.resolve_credential(credential_id)
        target = self.models.resolve_selected() if auto_optimize else None

        task = self.registry.create_task(media_path.name, credential_id=credential.id,
                                         auto_optimize=auto_optimize)
        cancel_event = self.registry.cancel_token(task.id)

        if credential.id != DEFAULT_CREDENTIAL_ID:
            self.pool.mark_in_use(credential.id)
        logger.info("Task %s: transcribing %s with credential %s (%s)",
                    task.id, media_path.name, credential.id, mask_secret(credential.key))

        self._start_worker(task.id, self._run_transcription,
                           task.id, media_path, credential, target, on_complete, cancel_event)
        return task.id

    def _run_transcription(self, task_id: str, media_path: Path, credential: Credential,
                           target: Optional[OptimizationTarget],
                           on_complete: Optional[TranscribeCallback],
                           cancel_event: threading.Event):
        try:
            raw_text = self.executor.transcribe(task_id, media_path, credential, cancel_event)

            if target is not None and raw_text.strip():
                self._optimize_into_task(task_id, raw_text, target, None, cancel_event)

            if cancel_event.is_set():
                raise TaskCancelled()

            self.registry.update_task(task_id, status=TaskStatus.DONE)
            logger.info("Task %s: done", task_id)
            self._fire_transcribe_complete(task_id, on_complete)

        except TaskCancelled:
            logger.info("Task %s: cancelled", task_id)
            self.registry.update_task(task_id, status=TaskStatus.DONE)
        except TaskError as e:
            self._fail(task_id, e)
        except Exception as e:
            logger.error("Unexpected error processing task %s: %s", task_id, e, exc_info=True)
            self.registry.update_task(task_id, status=TaskStatus.ERROR,
                                      error=f"Unexpected error: {e}"[:2000])
        finally:
            if credential.id != DEFAULT_CREDENTIAL_ID:
                self.pool.mark_done(credential.id)
            self._forget_worker(task_id)

    def _fire_transcribe_complete(self, task_id: str, on_complete: Optional[TranscribeCallback]):
        if on_complete is None:
            return
        task = self.registry.get_task(task_id)
        if task is None:
            return
        try:
            on_complete(task)
        except Exception:
            logger.exception("on_complete callback failed for task %s", task_id)

    # ── Optimization ──────────────────────────────────────────────────

    def optimize_text(self, record_id: str, text: str, file_name: str,
                      on_progress: Optional[OptimizeCallback] = None,
                      on_complete: Optional[OptimizeCallback] = None) -> str:
        """
        Start optimizing an existing transcript in the background.
        Returns the new task id; raises ConfigurationError if no model key is set.
        """
        self._require_init()
        target = self.models.resolve_selected()

        task_id = f"opt-{record_id}-{uuid.uuid4().hex[:8]}"
        self.registry.create_task(file_name, task_id=task_id, raw_text=text)
        cancel_event = self.registry.cancel_token(task_id)
        self.registry.update_task(task_id, status=TaskStatus.OPTIMIZING,
                                  progress=PROGRESS_TRANSCRIBED)

        self._start_worker(task_id, self._run_optimization,
                           task_id, text, target, on_progress, on_complete, cancel_event)
        return task_id

    def optimize_task(self, task_id: str, on_complete: Optional[OptimizeCallback] = None) -> str:
        """Optimize a finished task's transcript as a new task. Returns the new id."""
        task = self.registry.get_task(task_id)
        if task is None:
            raise KeyError(task_id)
        if not task.raw_text.strip():
            raise ConfigurationError(f"Task {task_id} has no transcript to optimize")
        return self.optimize_text(task_id, task.raw_text, task.file_name, on_complete=on_complete)

    def _run_optimization(self, task_id: str, text: str, target: OptimizationTarget,
                          on_progress: Optional[OptimizeCallback],
                          on_complete: Optional[OptimizeCallback],
                          cancel_event: threading.Event):
        try:
            result = self._optimize_into_task(task_id, text, target, on_progress, cancel_event)
            self.registry.update_task(task_id, status=TaskStatus.DONE)
            logger.info("Task %s: optimization done", task_id)
            if on_complete is not None:
                try:
                    on_complete(result.title, result.content)
                except Exception:
                    logger.exception("on_complete callback failed for task %s", task_id)
        except TaskCancelled:
            logger.info("Task %s: cancelled", task_id)
            self.registry.update_task(task_id, status=TaskStatus.DONE)
        except TaskError as e:
            self._fail(task_id, e)
        except Exception as e:
            logger.error("Unexpected error optimizing task %s: %s", task_id, e, exc_info=True)
            self.registry.update_task(task_id, status=TaskStatus.ERROR,
                                      error=f"Unexpected error: {e}"[:2000])
        finally:
            self._forget_worker(task_id)

    def _optimize_into_task(self, task_id: str, text: str, target: OptimizationTarget,
                            on_progress: Optional[OptimizeCallback],
                            cancel_event: threading.Event):
        self.registry.update_task(task_id, status=TaskStatus.OPTIMIZING,
                                  optimized_text='', optimized_title='')

        def progress(title: str, content: str):
            self.registry.update_task(task_id, optimized_title=title, optimized_text=content)
            if on_progress is not None:
                on_progress(title, content)

        result = self.optimizer.optimize(text, target, progress, cancel_event)

        fields = {'optimized_title': result.title, 'optimized_text': result.content}
        if result.partial:
            fields['warning'] = (f"Optimization incomplete: chunks "
                                 f"{', '.join(str(i + 1) for i in result.failed_chunks)} failed")
        self.registry.update_task(task_id, **fields)
        return result

    # ── Task access ───────────────────────────────────────────────────

    def subscribe(self, listener: Callable[[TaskChange], None]) -> Callable[[], None]:
        return self.registry.subscribe(listener)

    def events(self, task_id: Optional[str] = None) -> EventStream:
        return self.registry.events(task_id)

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.registry.get_task(task_id)

    def list_tasks(self) -> list[Task]:
        return self.registry.list_tasks()

    def cancel_task(self, task_id: str) -> bool:
        cancelled = self.registry.cancel(task_id)
        if cancelled:
            logger.info("Task %s: cancellation requested", task_id)
        return cancelled

    def remove_task(self, task_id: str) -> bool:
        return self.registry.remove_task(task_id)

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[Task]:
        """Block until the task's worker exits (or timeout); returns the task snapshot."""
        with self._workers_lock:
            worker = self._workers.get(task_id)
        if worker is not None:
            worker.join(timeout)
        return self.registry.get_task(task_id)

    # ── Workers ───────────────────────────────────────────────────────

    def _start_worker(self, task_id: str, target: Callable, *args):
        worker = threading.Thread(target=target, args=args, daemon=True,
                                  name=f"task-{task_id[:12]}")
        with self._workers_lock:
            self._workers[task_id] = worker
        worker.start()

    def _forget_worker(self, task_id: str):
        with self._workers_lock:
            self._workers.pop(task_id, None)

    def _fail(self, task_id: str, error: TaskError):
        logger.error("Task %s failed [%s]: %s", task_id, error.code, error.message)
        self.registry.update_task(task_id, status=TaskStatus.ERROR, error=error.message)
