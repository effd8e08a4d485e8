"""
Application configuration manager.
Stores settings in a JSON file under the user's config directory.
Secrets may also come from environment variables.
"""

import json
import logging
import os
import re
from pathlib import Path

from feedscribe.core.constants import (
    CONFIG_PATH, SPEECH_API_URL, SPEECH_MODEL, SPEECH_LANGUAGE,
    MAX_UPLOAD_BYTES, CHUNK_DURATION_SEC, INTER_CHUNK_DELAY_SEC,
    TARGET_SAMPLE_RATE, NOMINAL_BITRATE_KBPS,
    OPTIMIZE_CHUNK_CHARS, OPTIMIZE_SINGLE_MAX_CHARS, OPTIMIZE_CONCURRENCY,
    OPTIMIZE_TEMPERATURE, PROGRESS_THROTTLE_SEC,
    REQUEST_TIMEOUT_SEC, MAX_RETRIES, BACKOFF_BASE_SEC, RATE_LIMIT_DEFAULT_WAIT_SEC,
    DEFAULT_AI_MODEL,
)

logger = logging.getLogger(__name__)

ENV_SPEECH_API_KEY = "FEEDSCRIBE_SPEECH_API_KEY"
ENV_AI_API_KEY_PREFIX = "FEEDSCRIBE_AI_API_KEY_"

# Validation bounds: key -> (type, min, max)
_BOUNDS = {
    'chunk_duration_sec': (int, 60, 1800),
    'inter_chunk_delay_sec': (float, 0.0, 30.0),
    'max_upload_bytes': (int, 1024 * 1024, 100 * 1024 * 1024),
    'target_sample_rate': (int, 8000, 48000),
    'nominal_bitrate_kbps': (int, 16, 512),
    'optimize_chunk_chars': (int, 500, 8000),
    'optimize_single_max_chars': (int, 1000, 32000),
    'optimize_concurrency': (int, 1, 8),
    'optimize_temperature': (float, 0.0, 2.0),
    'progress_throttle_sec': (float, 0.0, 5.0),
    'request_timeout_sec': (float, 5.0, 600.0),
    'max_retries': (int, 0, 10),
    'backoff_base_sec': (float, 0.0, 60.0),
    'rate_limit_default_wait_sec': (float, 0.0, 300.0),
}

_DEFAULTS = {
    'speech_api_url': SPEECH_API_URL,
    'speech_model': SPEECH_MODEL,
    'speech_api_key': '',
    'language': SPEECH_LANGUAGE,
    'max_upload_bytes': MAX_UPLOAD_BYTES,
    'chunk_duration_sec': CHUNK_DURATION_SEC,
    'inter_chunk_delay_sec': INTER_CHUNK_DELAY_SEC,
    'target_sample_rate': TARGET_SAMPLE_RATE,
    'nominal_bitrate_kbps': NOMINAL_BITRATE_KBPS,
    'optimize_chunk_chars': OPTIMIZE_CHUNK_CHARS,
    'optimize_single_max_chars': OPTIMIZE_SINGLE_MAX_CHARS,
    'optimize_concurrency': OPTIMIZE_CONCURRENCY,
    'optimize_temperature': OPTIMIZE_TEMPERATURE,
    'progress_throttle_sec': PROGRESS_THROTTLE_SEC,
    'request_timeout_sec': REQUEST_TIMEOUT_SEC,
    'max_retries': MAX_RETRIES,
    'backoff_base_sec': BACKOFF_BASE_SEC,
    'rate_limit_default_wait_sec': RATE_LIMIT_DEFAULT_WAIT_SEC,
    'ai_model': DEFAULT_AI_MODEL,
    'ai_base_url': '',
    'ai_custom_model': '',
    'api_keys': {},
    'speech_credentials': [],
}


def env_key_name(model_id: str) -> str:
    """Environment variable holding the API key for a model id."""
    return ENV_AI_API_KEY_PREFIX + re.sub(r'[^A-Za-z0-9]', '_', model_id).upper()


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None, persist: bool = True):
        self.path = config_path or CONFIG_PATH
        self.persist = persist
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = json.loads(json.dumps(_DEFAULTS))
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        if not self.persist:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def update(self, values: dict):
        """Set several keys with a single save."""
        for key, value in values.items():
            self._data[key] = self._validate(key, value)
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _BOUNDS:
            kind, low, high = _BOUNDS[key]
            try:
                value = kind(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r — using default", key, value)
                return _DEFAULTS[key]
            return max(low, min(high, value))

        if key == 'api_keys':
            if not isinstance(value, dict):
                logger.warning("Invalid api_keys %r — ignoring", type(value).__name__)
                return {}
            return {str(k): str(v).strip() for k, v in value.items() if v}

        if key == 'speech_credentials':
            if not isinstance(value, list):
                logger.warning("Invalid speech_credentials %r — ignoring", type(value).__name__)
                return []
            return [dict(item) for item in value
                    if isinstance(item, dict) and str(item.get('key') or '').strip()]

        if key in ('speech_api_key', 'ai_base_url', 'ai_custom_model', 'ai_model', 'language'):
            return str(value or '').strip()

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    # ── Secrets ───────────────────────────────────────────────────────

    def speech_api_key(self) -> str:
        return (os.environ.get(ENV_SPEECH_API_KEY) or self._data.get('speech_api_key') or '').strip()

    def ai_api_key(self, model_id: str) -> str:
        from_env = os.environ.get(env_key_name(model_id))
        if from_env:
            return from_env.strip()
        return (self._data.get('api_keys') or {}).get(model_id, '')

    def set_ai_api_key(self, model_id: str, api_key: str):
        keys = dict(self._data.get('api_keys') or {})
        if api_key:
            keys[model_id] = api_key.strip()
        else:
            keys.pop(model_id, None)
        self.set('api_keys', keys)

    # ── Typed accessors ───────────────────────────────────────────────

    @property
    def ai_model(self) -> str:
        return self._data.get('ai_model') or DEFAULT_AI_MODEL

    @ai_model.setter
    def ai_model(self, value: str):
        self.set('ai_model', value)

    @property
    def chunk_duration_sec(self) -> int:
        return self._data.get('chunk_duration_sec', CHUNK_DURATION_SEC)

    @property
    def max_upload_bytes(self) -> int:
        return self._data.get('max_upload_bytes', MAX_UPLOAD_BYTES)

    @property
    def max_retries(self) -> int:
        return self._data.get('max_retries', MAX_RETRIES)
