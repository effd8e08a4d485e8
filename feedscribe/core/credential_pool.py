"""
Credential Pool.
Rotating set of speech-endpoint API keys. The service only ever calls
get_next_credential / mark_in_use / mark_done / get_all_credentials;
everything else is for whoever manages the keys.
"""

import abc
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from feedscribe.core.constants import SPEECH_MODEL
from feedscribe.core.models import Credential
from feedscribe.core.security_utils import mask_secret

logger = logging.getLogger(__name__)


class CredentialPool(abc.ABC):
    """What the transcription service needs from a key pool."""

    @abc.abstractmethod
    def get_next_credential(self) -> Optional[Credential]:
        """Least-busy active credential, or None when the pool is empty."""

    @abc.abstractmethod
    def mark_in_use(self, credential_id: str):
        ...

    @abc.abstractmethod
    def mark_done(self, credential_id: str):
        ...

    @abc.abstractmethod
    def get_all_credentials(self) -> list[Credential]:
        ...

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        for cred in self.get_all_credentials():
            if cred.id == credential_id:
                return cred
        return None

    def stats(self) -> dict:
        return {}


@dataclass
class _PoolEntry:
    id: str
    key: str
    name: str
    model_id: str
    active: bool = True
    request_count: int = 0
    total_requests: int = 0
    last_used: float = 0.0

    def to_credential(self) -> Credential:
        return Credential(id=self.id, key=self.key, model_id=self.model_id, name=self.name)


class InMemoryCredentialPool(CredentialPool):
    """
    Process-local pool. Selection picks the active key with the fewest
    in-flight requests; in-use/done transitions are serialized by a lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, _PoolEntry] = {}

    @classmethod
    def from_config(cls, config) -> "InMemoryCredentialPool":
        pool = cls()
        for item in config.get('speech_credentials') or []:
            pool.add_credential(item['key'], item.get('name', ''),
                                item.get('model_id') or SPEECH_MODEL,
                                credential_id=item.get('id'))
        return pool

    # ── Collaborator interface ────────────────────────────────────────

    def get_next_credential(self) -> Optional[Credential]:
        with self._lock:
            active = [e for e in self._entries.values() if e.active]
            if not active:
                return None
            # min() keeps insertion order among ties
            entry = min(active, key=lambda e: e.request_count)
            return entry.to_credential()

    def mark_in_use(self, credential_id: str):
        with self._lock:
            entry = self._entries.get(credential_id)
            if entry is None:
                return
            entry.request_count += 1
            entry.total_requests += 1
            entry.last_used = time.time()

    def mark_done(self, credential_id: str):
        with self._lock:
            entry = self._entries.get(credential_id)
            if entry is None:
                return
            entry.request_count = max(0, entry.request_count - 1)

    def get_all_credentials(self) -> list[Credential]:
        with self._lock:
            return [e.to_credential() for e in self._entries.values()]

    # ── Management ────────────────────────────────────────────────────

    def add_credential(self, key: str, name: str = '', model_id: str = SPEECH_MODEL,
                       credential_id: Optional[str] = None) -> str:
        key = (key or '').strip()
        if not key:
            raise ValueError("API key must not be empty")
        with self._lock:
            credential_id = credential_id or uuid.uuid4().hex[:12]
            self._entries[credential_id] = _PoolEntry(
                id=credential_id, key=key, name=name or credential_id, model_id=model_id)
        logger.info("Added credential %s (%s, %s)", credential_id, mask_secret(key), model_id)
        return credential_id

    def remove_credential(self, credential_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(credential_id, None) is not None
        if removed:
            logger.info("Removed credential %s", credential_id)
        return removed

    def toggle_active(self, credential_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(credential_id)
            if entry is None:
                return False
            entry.active = not entry.active
            return True

    def is_active(self, credential_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(credential_id)
            return bool(entry and entry.active)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        with self._lock:
            entries = list(self._entries.values())
            return {
                'total_keys': len(entries),
                'active_keys': sum(1 for e in entries if e.active),
                'total_requests': sum(e.total_requests for e in entries),
                'current_load': sum(e.request_count for e in entries),
                'key_stats': [
                    {
                        'id': e.id,
                        'name': e.name,
                        'active': e.active,
                        'request_count': e.request_count,
                        'total_requests': e.total_requests,
                    }
                    for e in entries
                ],
            }
