"""
Shared constants for feedscribe.
Single source of truth — imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "feedscribe"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_CONFIG_DIR = HOME / ".config" / APP_NAME
APP_STATE_DIR = HOME / ".local" / "state" / APP_NAME
CONFIG_PATH = APP_CONFIG_DIR / "config.json"
LOG_DIR = APP_STATE_DIR / "logs"

# ── Task status values ────────────────────────────────────────────────
class TaskStatus:
    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    OPTIMIZING = "optimizing"
    DONE = "done"
    ERROR = "error"

# Forward-only ordering; ERROR is reachable from any non-terminal state
STATUS_ORDER = {
    TaskStatus.PENDING: 0,
    TaskStatus.TRANSCRIBING: 1,
    TaskStatus.OPTIMIZING: 2,
    TaskStatus.DONE: 3,
}
TERMINAL_STATUSES = {TaskStatus.DONE, TaskStatus.ERROR}
ACTIVE_STATUSES = {TaskStatus.PENDING, TaskStatus.TRANSCRIBING, TaskStatus.OPTIMIZING}

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    CONFIGURATION = "ERR_CONFIGURATION"
    AUTH = "ERR_AUTH"
    ENDPOINT = "ERR_ENDPOINT"
    SLICE = "ERR_SLICE"
    CHUNK_TOO_LARGE = "ERR_CHUNK_TOO_LARGE"
    ALL_CHUNKS_FAILED = "ERR_ALL_CHUNKS_FAILED"
    RETRIES_EXHAUSTED = "ERR_RETRIES_EXHAUSTED"
    BAD_RESPONSE = "ERR_BAD_RESPONSE"
    UNEXPECTED = "ERR_UNEXPECTED"

    # Retryable
    RATE_LIMIT = "ERR_RATE_LIMIT"
    NETWORK = "ERR_NETWORK"
    SERVER = "ERR_SERVER"

    # Special (not failure)
    CANCELLED = "CANCELLED"

RETRYABLE_ERRORS = {
    ErrorCode.RATE_LIMIT,
    ErrorCode.NETWORK,
    ErrorCode.SERVER,
}

# ── Transcription defaults ────────────────────────────────────────────
SPEECH_API_URL = "https://api.groq.com/openai/v1/audio/transcriptions"
SPEECH_MODEL = "whisper-large-v3"
SPEECH_LANGUAGE = "zh"
SPEECH_RESPONSE_FORMAT = "verbose_json"
DEFAULT_CREDENTIAL_ID = "default"

MAX_UPLOAD_BYTES = 25 * 1024 * 1024   # endpoint payload cap
CHUNK_DURATION_SEC = 600              # 10 minutes per audio chunk
INTER_CHUNK_DELAY_SEC = 3.0
NOMINAL_BITRATE_KBPS = 128            # duration estimate when metadata is missing

# Slicer output: 16 kHz mono 16-bit PCM WAV (~32 KB per second)
TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1
TARGET_SAMPLE_WIDTH = 2

# ── Text optimization defaults ────────────────────────────────────────
OPTIMIZE_CHUNK_CHARS = 2000
OPTIMIZE_SINGLE_MAX_CHARS = 8000
OPTIMIZE_CONCURRENCY = 3
OPTIMIZE_TEMPERATURE = 0.3
PROGRESS_THROTTLE_SEC = 0.1           # at most ~10 merged updates per second
OPTIMIZED_CHUNK_SEPARATOR = "\n\n"
TRANSCRIPT_CHUNK_SEPARATOR = "\n"

DEFAULT_AI_MODEL = "deepseek-chat"
CUSTOM_MODEL_ID = "custom"
SINGLE_SHOT_PROVIDERS = {"Google"}

# ── Retry / rate limit ────────────────────────────────────────────────
REQUEST_TIMEOUT_SEC = 60
MAX_RETRIES = 3
BACKOFF_BASE_SEC = 2.0
RATE_LIMIT_DEFAULT_WAIT_SEC = 30.0

# ── Progress mapping ─────────────────────────────────────────────────
PROGRESS_CREATED = 0
PROGRESS_PROBE = 5
PROGRESS_CHUNK_START = 10
PROGRESS_CHUNK_END = 90
PROGRESS_SINGLE_UPLOAD = 20
PROGRESS_SINGLE_RECEIVED = 80
PROGRESS_TRANSCRIBED = 100

# ── Logging ───────────────────────────────────────────────────────────
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
