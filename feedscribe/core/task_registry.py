"""
Task Registry & Notifier.
In-memory store of every in-flight and finished task. update_task() is the
only mutation path; each mutation is followed by a synchronous
notification to every subscriber. Thread-safe via an explicit re-entrant lock.
"""

import dataclasses
import logging
import queue
import threading
import uuid
from typing import Callable, Iterator, Optional

from feedscribe.core.constants import (
    TaskStatus, STATUS_ORDER, TERMINAL_STATUSES, ACTIVE_STATUSES, PROGRESS_CREATED,
)
from feedscribe.core.models import Task, TaskChange, ProgressEvent

logger = logging.getLogger(__name__)

Listener = Callable[[TaskChange], None]

_IMMUTABLE_FIELDS = {'id', 'file_name', 'credential_id', 'created_at'}
_TASK_FIELDS = {f.name for f in dataclasses.fields(Task)}


class InvalidTransition(ValueError):
    """A status update that would move a task backwards."""


class CancelToken(threading.Event):
    """
    Per-task cancellation flag.
    Besides the usual Event API it runs registered callbacks once when set,
    so a worker blocked on a socket read can have that socket closed under it.
    """

    def __init__(self):
        super().__init__()
        self._callbacks: list[Callable[[], None]] = []
        self._callback_lock = threading.Lock()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register callback; returns a function that removes it. Runs at once if already set."""
        with self._callback_lock:
            if not self.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove_callback(callback)
        self._run(callback)
        return lambda: None

    def _remove_callback(self, callback: Callable[[], None]):
        with self._callback_lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def set(self):
        with self._callback_lock:
            super().set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run(callback)

    @staticmethod
    def _run(callback: Callable[[], None]):
        try:
            callback()
        except Exception:
            logger.exception("Cancel callback %r failed", callback)


def _snapshot(task: Task) -> Task:
    return dataclasses.replace(task)


class TaskRegistry:
    """
    Owns all Task records. Other components only read snapshots and call
    update_task(); no one else mutates a Task.
    Notifications are not throttled here — callers that refresh a UI
    should debounce on their side.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._cancel_events: dict[str, CancelToken] = {}
        self._listeners: list[Listener] = []

    # ── Creation / lookup ─────────────────────────────────────────────

    def create_task(self, file_name: str, credential_id: Optional[str] = None,
                    task_id: Optional[str] = None, **initial) -> Task:
        """Register a new pending task and notify subscribers."""
        with self._lock:
            task_id = task_id or uuid.uuid4().hex
            if task_id in self._tasks:
                raise ValueError(f"Task id already in use: {task_id}")
            unknown = set(initial) - _TASK_FIELDS
            if unknown:
                raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")

            task = Task(id=task_id, file_name=file_name, credential_id=credential_id,
                        status=TaskStatus.PENDING, progress=PROGRESS_CREATED, **initial)
            self._tasks[task_id] = task
            self._cancel_events[task_id] = CancelToken()
            snapshot = _snapshot(task)
            self._notify(TaskChange("created", snapshot))

        logger.info("Created task %s for %s (credential %s)", task_id, file_name, credential_id)
        return snapshot

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return _snapshot(task) if task else None

    def list_tasks(self) -> list[Task]:
        """All tasks, oldest first."""
        with self._lock:
            tasks = [_snapshot(t) for t in self._tasks.values()]
        return sorted(tasks, key=lambda t: t.created_at)

    def list_active_tasks(self) -> list[Task]:
        return [t for t in self.list_tasks() if t.status in ACTIVE_STATUSES]

    # ── Mutation ──────────────────────────────────────────────────────

    def update_task(self, task_id: str, **fields) -> Optional[Task]:
        """
        Merge fields into the stored task, then notify.
        Returns the new snapshot, or None if the task is gone or already
        terminal (late updates from a cancelled worker are dropped).
        """
        unknown = set(fields) - _TASK_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")

        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                logger.debug("Update for unknown task %s ignored", task_id)
                return None
            if task.status in TERMINAL_STATUSES:
                logger.debug("Update for finished task %s ignored: %s", task_id, sorted(fields))
                return None

            for name in _IMMUTABLE_FIELDS & set(fields):
                if fields[name] != getattr(task, name):
                    raise ValueError(f"Task field '{name}' cannot change")

            new_status = fields.get('status', task.status)
            self._check_transition(task, new_status)

            if fields.get('error') is not None and new_status != TaskStatus.ERROR:
                raise ValueError("'error' may only be set when moving to the error state")

            if 'progress' in fields:
                # Progress never goes backwards once set
                fields['progress'] = max(task.progress, min(100, max(0, int(fields['progress']))))

            for name, value in fields.items():
                setattr(task, name, value)

            snapshot = _snapshot(task)
            self._notify(TaskChange("updated", snapshot))
            return snapshot

    @staticmethod
    def _check_transition(task: Task, new_status: str):
        if new_status == task.status:
            return
        if new_status == TaskStatus.ERROR:
            return
        if new_status not in STATUS_ORDER:
            raise InvalidTransition(f"Unknown status '{new_status}'")
        if STATUS_ORDER[new_status] < STATUS_ORDER[task.status]:
            raise InvalidTransition(
                f"Task {task.id} cannot move from {task.status} back to {new_status}")

    def remove_task(self, task_id: str) -> bool:
        """Cancel and delete a task."""
        with self._lock:
            self.cancel(task_id)
            task = self._tasks.pop(task_id, None)
            self._cancel_events.pop(task_id, None)
            if task is None:
                return False
            self._notify(TaskChange("removed", _snapshot(task)))
        logger.info("Removed task %s", task_id)
        return True

    # ── Cancellation ──────────────────────────────────────────────────

    def cancel_token(self, task_id: str) -> CancelToken:
        with self._lock:
            event = self._cancel_events.get(task_id)
            if event is None:
                raise KeyError(task_id)
            return event

    def cancel(self, task_id: str) -> bool:
        """
        Signal the task's workers to stop and close any stream they hold open.
        The worker decides the final state.
        """
        with self._lock:
            event = self._cancel_events.get(task_id)
        if event is None:
            return False
        event.set()
        return True

    # ── Pub/sub ───────────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def events(self, task_id: Optional[str] = None) -> "EventStream":
        """Iterable stream of progress events (optionally for one task)."""
        return EventStream(self, task_id)

    def _notify(self, change: TaskChange):
        # Called with the lock held so subscribers see mutations in order
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Task listener %r failed", listener)


_CLOSED = object()


class EventStream:
    """
    Channel view over registry notifications.
    Iterate to receive ProgressEvent objects; close() unsubscribes and ends
    the iteration. A per-task stream closes itself once the task finishes
    or is removed.
    """

    def __init__(self, registry: TaskRegistry, task_id: Optional[str] = None):
        self.task_id = task_id
        self._queue: queue.Queue = queue.Queue()
        self._closed = False
        self._unsubscribe = registry.subscribe(self._on_change)
        if task_id is not None:
            current = registry.get_task(task_id)
            if current is None or current.status in TERMINAL_STATUSES:
                if current is not None:
                    self._queue.put(to_progress_event(current))
                self.close()

    def _on_change(self, change: TaskChange):
        task = change.task
        if self.task_id is not None and task.id != self.task_id:
            return
        if change.kind != "removed":
            self._queue.put(to_progress_event(task))
        if self.task_id is not None and (change.kind == "removed" or task.status in TERMINAL_STATUSES):
            self.close()

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None when the stream is closed or the timeout expires."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        return item

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return
            yield item

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def to_progress_event(task: Task) -> ProgressEvent:
    partial = task.optimized_text if task.optimized_text else task.raw_text
    return ProgressEvent(
        task_id=task.id,
        status=task.status,
        progress=task.progress,
        partial_text=partial,
        title=task.optimized_title,
    )
