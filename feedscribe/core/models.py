"""
In-memory data models (plain dataclasses) for feedscribe.
"""

import time
from dataclasses import dataclass, field
from typing import Optional

from feedscribe.core.constants import SINGLE_SHOT_PROVIDERS


@dataclass
class Task:
    id: str
    file_name: str
    status: str = "pending"
    progress: int = 0
    raw_text: str = ""
    optimized_text: str = ""
    optimized_title: str = ""
    error: Optional[str] = None
    warning: Optional[str] = None
    total_chunks: Optional[int] = None       # only while chunking is active
    processed_chunks: Optional[int] = None
    credential_id: Optional[str] = None
    auto_optimize: bool = False
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class AudioChunk:
    index: int
    start_time: float
    end_time: float

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class TextChunk:
    index: int
    text: str
    is_last: bool = False


@dataclass(frozen=True)
class Credential:
    id: str
    key: str
    model_id: str
    name: str = ""


@dataclass(frozen=True)
class AIModel:
    id: str
    name: str
    provider: str
    api_url: str


@dataclass(frozen=True)
class OptimizationTarget:
    """Model endpoint + key bound to one optimization run."""
    model: AIModel
    api_key: str

    @property
    def single_shot(self) -> bool:
        return self.model.provider in SINGLE_SHOT_PROVIDERS


@dataclass
class OptimizeResult:
    title: str
    content: str
    failed_chunks: list[int] = field(default_factory=list)
    chunk_errors: dict[int, str] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.failed_chunks)


@dataclass(frozen=True)
class ProgressEvent:
    task_id: str
    status: str
    progress: int
    partial_text: str
    title: str = ""


@dataclass(frozen=True)
class TaskChange:
    """What subscribers receive on every registry mutation."""
    kind: str                # "created" | "updated" | "removed"
    task: Task               # snapshot, safe to read from any thread
