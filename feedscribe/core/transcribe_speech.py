"""
Speech-to-text endpoint integration.
OpenAI-compatible /audio/transcriptions (Groq Whisper by default),
multipart upload, verbose_json response.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

from feedscribe.core.http_retry import RetryingHttpClient
from feedscribe.core.error_codes import BadResponseError
from feedscribe.core.models import Credential
from feedscribe.core.constants import (
    SPEECH_API_URL, SPEECH_MODEL, SPEECH_LANGUAGE, SPEECH_RESPONSE_FORMAT,
)

logger = logging.getLogger(__name__)


class SpeechClient:
    """Uploads audio payloads to the transcription endpoint."""

    def __init__(self, http: RetryingHttpClient,
                 api_url: str = SPEECH_API_URL,
                 language: str = SPEECH_LANGUAGE,
                 default_model: str = SPEECH_MODEL):
        self.http = http
        self.api_url = api_url
        self.language = language
        self.default_model = default_model

    @classmethod
    def from_config(cls, config, http: RetryingHttpClient) -> "SpeechClient":
        return cls(
            http,
            api_url=config.get('speech_api_url'),
            language=config.get('language'),
            default_model=config.get('speech_model'),
        )

    def transcribe_bytes(self, payload: bytes, filename: str, credential: Credential,
                         cancel_event: Optional[threading.Event] = None) -> str:
        """
        Transcribe one payload. Returns the transcript text.
        Raises AuthenticationError / RetryExhaustedError / EndpointError
        from the retry layer, BadResponseError for an unparseable body.
        """
        data = {
            'model': credential.model_id or self.default_model,
            'response_format': SPEECH_RESPONSE_FORMAT,
        }
        if self.language:
            data['language'] = self.language

        logger.debug("Uploading %s (%.2f MB) to speech endpoint",
                     filename, len(payload) / 1024 / 1024)

        resp = self.http.post(
            self.api_url,
            cancel_event=cancel_event,
            headers={'Authorization': f"Bearer {credential.key}"},
            data=data,
            files={'file': (filename, payload)},
        )

        try:
            result = resp.json()
        except ValueError:
            raise BadResponseError("Failed to parse transcription response JSON")

        return extract_transcript_text(result)

    def transcribe_file(self, media_path: Path, credential: Credential,
                        cancel_event: Optional[threading.Event] = None) -> str:
        """Single-request transcription of a whole file."""
        media_path = Path(media_path)
        return self.transcribe_bytes(media_path.read_bytes(), media_path.name,
                                     credential, cancel_event)


def extract_transcript_text(response: dict) -> str:
    """
    Extract plain text from a transcription response.
    Uses the top-level `text`, falls back to joining segment texts.
    """
    if not isinstance(response, dict):
        return ""

    text = response.get('text')
    if isinstance(text, str) and text.strip():
        return text.strip()

    segments = response.get('segments') or []
    try:
        parts = [s.get('text', '').strip() for s in segments if isinstance(s, dict)]
    except AttributeError as e:
        logger.warning("Error extracting transcript segments: %s", e)
        return ""
    return ' '.join(p for p in parts if p)
