"""
Text-generation endpoint integration.
Two wire shapes are supported:
- OpenAI-compatible chat completions, streamed as server-sent events.
- Gemini-style generateContent, one non-streaming reply (provider "Google").
Both are decoded into small tagged reply types before anything else sees them.
"""

import json
import logging
import socket
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Union

import requests

from feedscribe.core.http_retry import RetryingHttpClient
from feedscribe.core.error_codes import BadResponseError, NetworkError, TaskCancelled
from feedscribe.core.models import OptimizationTarget
from feedscribe.core.constants import OPTIMIZE_TEMPERATURE

logger = logging.getLogger(__name__)

_SSE_DATA = "data:"
_SSE_DONE = "[DONE]"


@dataclass(frozen=True)
class StreamDelta:
    """One `choices[0].delta.content` fragment of a streamed completion."""
    content: str


@dataclass(frozen=True)
class StreamEnd:
    """The `[DONE]` sentinel."""


@dataclass(frozen=True)
class SingleShotReply:
    """Whole reply of a non-streaming provider."""
    text: str
    finish_reason: Optional[str] = None


ProviderReply = Union[StreamDelta, StreamEnd, SingleShotReply]


def parse_sse_line(line: str) -> Optional[ProviderReply]:
    """
    Decode one SSE line. Returns StreamDelta / StreamEnd, or None for
    comments, keep-alives, empty deltas and unparseable payloads.
    """
    line = line.strip()
    if not line.startswith(_SSE_DATA):
        return None
    payload = line[len(_SSE_DATA):].strip()
    if payload == _SSE_DONE:
        return StreamEnd()
    try:
        data = json.loads(payload)
    except ValueError:
        logger.debug("Skipping unparseable stream line: %.80s", payload)
        return None

    try:
        content = data['choices'][0]['delta'].get('content')
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    if not isinstance(content, str) or not content:
        return None
    return StreamDelta(content)


def parse_single_shot_body(body) -> SingleShotReply:
    """Decode `candidates[0].content.parts[0].text`."""
    try:
        candidate = body['candidates'][0]
    except (KeyError, IndexError, TypeError) as e:
        raise BadResponseError("Reply has no candidates") from e

    parts = (candidate.get('content') or {}).get('parts') or []
    text = ''
    if parts and isinstance(parts[0], dict):
        text = parts[0].get('text') or ''
    return SingleShotReply(text=text, finish_reason=candidate.get('finishReason'))


def _is_set(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _close_on_cancel(resp: requests.Response,
                     cancel_event: Optional[threading.Event]) -> Callable[[], None]:
    """
    Tear the response down as soon as the task's cancel token fires.
    Returns the function that unregisters the hook. A plain Event has no
    hook, and then cancellation is only noticed between lines.
    """
    add_callback = getattr(cancel_event, 'add_callback', None)
    if add_callback is None:
        return lambda: None
    return add_callback(lambda: _abort_response(resp))


def _abort_response(resp: requests.Response):
    # close() alone does not wake a thread blocked in recv(); shut the socket first
    sock = getattr(getattr(resp.raw, 'connection', None), 'sock', None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug("Socket shutdown on cancel failed: %s", e)
    resp.close()
    logger.info("Closed model stream after cancellation")


class ChatClient:
    """Sends one prompt + text to the selected model and yields text as it arrives."""

    def __init__(self, http: RetryingHttpClient, temperature: float = OPTIMIZE_TEMPERATURE):
        self.http = http
        self.temperature = temperature

    @classmethod
    def from_config(cls, config, http: RetryingHttpClient) -> "ChatClient":
        return cls(http, temperature=config.get('optimize_temperature'))

    def generate(self, system_prompt: str, text: str, target: OptimizationTarget,
                 cancel_event: Optional[threading.Event] = None) -> Iterator[str]:
        """
        Yield text fragments of the model reply.
        A single-shot provider yields its whole reply once.
        Raises TaskCancelled when cancel_event is set mid-stream.
        """
        if target.single_shot:
            reply = self._single_shot(system_prompt, text, target, cancel_event)
            if reply.text:
                yield reply.text
            return

        yield from self._stream(system_prompt, text, target, cancel_event)

    def _stream(self, system_prompt: str, text: str, target: OptimizationTarget,
                cancel_event: Optional[threading.Event]) -> Iterator[str]:
        body = {
            'model': target.model.id,
            'messages': [
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': text},
            ],
            'temperature': self.temperature,
            'stream': True,
        }
        resp = self.http.post(
            target.model.api_url,
            cancel_event=cancel_event,
            headers={'Authorization': f"Bearer {target.api_key}",
                     'Accept': 'text/event-stream'},
            json=body,
            stream=True,
        )

        unregister = _close_on_cancel(resp, cancel_event)
        try:
            for raw in resp.iter_lines(chunk_size=None):
                if _is_set(cancel_event):
                    raise TaskCancelled()
                if not raw:
                    continue
                line = raw.decode('utf-8', errors='replace') if isinstance(raw, bytes) else raw
                reply = parse_sse_line(line)
                if isinstance(reply, StreamEnd):
                    break
                if isinstance(reply, StreamDelta):
                    yield reply.content
            if _is_set(cancel_event):
                raise TaskCancelled()
        except (requests.exceptions.ChunkedEncodingError,
                requests.exceptions.ConnectionError) as e:
            if _is_set(cancel_event):
                raise TaskCancelled() from e
            # Partial output already went out, so the stream is not retried
            raise NetworkError(f"Stream interrupted: {type(e).__name__}") from e
        except (AttributeError, ValueError, OSError) as e:
            # Reading from a response closed by another thread
            if not _is_set(cancel_event):
                raise
            raise TaskCancelled() from e
        finally:
            unregister()
            resp.close()

    def _single_shot(self, system_prompt: str, text: str, target: OptimizationTarget,
                     cancel_event: Optional[threading.Event]) -> SingleShotReply:
        body = {
            'contents': [{'parts': [{'text': f"{system_prompt}\n# Transcript\n{text}"}]}],
            'generationConfig': {'temperature': self.temperature},
        }
        resp = self.http.post(
            target.model.api_url,
            cancel_event=cancel_event,
            headers={'x-goog-api-key': target.api_key},
            json=body,
        )
        try:
            data = resp.json()
        except ValueError:
            raise BadResponseError("Failed to parse model response JSON")
        finally:
            resp.close()

        reply = parse_single_shot_body(data)
        if cancel_event is not None and cancel_event.is_set():
            raise TaskCancelled()
        logger.debug("Single-shot reply: %d chars, finish=%s", len(reply.text), reply.finish_reason)
        return reply
