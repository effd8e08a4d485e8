"""
Outbound HTTP with timeout, backoff and rate-limit handling.
Every request to the speech and text-generation endpoints goes through
RetryingHttpClient.request().

- 429: wait Retry-After seconds (or a fixed default), then retry.
- Connection reset / DNS / timeout / 5xx: exponential backoff, base * 2**attempt.
- 401/403: raise AuthenticationError immediately, no retry.
- Exhausted retries raise RetryExhaustedError naming the cause.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

import requests

from feedscribe.core.constants import (
    REQUEST_TIMEOUT_SEC, MAX_RETRIES, BACKOFF_BASE_SEC, RATE_LIMIT_DEFAULT_WAIT_SEC,
)
from feedscribe.core.error_codes import (
    AuthenticationError, EndpointError, NetworkError, RateLimitError,
    RetryExhaustedError, ServerError, TaskCancelled, TaskError,
)

logger = logging.getLogger(__name__)

# requests exceptions worth another attempt
_TRANSIENT_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


def parse_retry_after(value: str | None) -> float | None:
    """
    Parse a Retry-After header: delta-seconds or an HTTP date.
    Returns seconds to wait, or None when absent/unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def error_message_from_response(resp: requests.Response) -> str:
    """Best-effort human message from an error body (never the request headers)."""
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        err = data.get('error')
        if isinstance(err, dict) and err.get('message'):
            return str(err['message'])[:300]
        if isinstance(err, str) and err:
            return err[:300]
        if data.get('message'):
            return str(data['message'])[:300]
    text = (resp.text or '').strip()
    return text[:300] if text else f"HTTP {resp.status_code}"


def calculate_backoff_delay(attempt: int, base_delay: float = BACKOFF_BASE_SEC) -> float:
    """Exponential backoff: base * 2**attempt (attempt is 0-indexed)."""
    return base_delay * (2 ** attempt)


class RetryingHttpClient:
    """
    Thin wrapper over a requests.Session.
    Attempts for one call run strictly one after another; a retry reuses
    the caller's slot rather than adding a parallel request.
    """

    def __init__(self, session: Optional[requests.Session] = None,
                 timeout: float = REQUEST_TIMEOUT_SEC,
                 max_retries: int = MAX_RETRIES,
                 backoff_base: float = BACKOFF_BASE_SEC,
                 rate_limit_default_wait: float = RATE_LIMIT_DEFAULT_WAIT_SEC,
                 sleep: Optional[Callable[[float], None]] = None):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.rate_limit_default_wait = rate_limit_default_wait
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None,
                    sleep: Optional[Callable[[float], None]] = None) -> "RetryingHttpClient":
        return cls(
            session=session,
            timeout=config.get('request_timeout_sec'),
            max_retries=config.get('max_retries'),
            backoff_base=config.get('backoff_base_sec'),
            rate_limit_default_wait=config.get('rate_limit_default_wait_sec'),
            sleep=sleep,
        )

    def request(self, method: str, url: str,
                cancel_event: Optional[threading.Event] = None,
                **kwargs) -> requests.Response:
        """
        Issue a request, retrying transient failures.
        Returns a response with a 2xx/3xx status; raises a TaskError otherwise.
        """
        kwargs.setdefault('timeout', self.timeout)
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            self._check_cancelled(cancel_event)

            try:
                resp = self.session.request(method, url, **kwargs)
            except _TRANSIENT_EXCEPTIONS as e:
                err = NetworkError(f"{type(e).__name__}: {e}")
                err.__cause__ = e
            except requests.exceptions.RequestException as e:
                raise EndpointError(f"Request failed: {e}") from e
            else:
                err = self._classify(resp)
                if err is None:
                    return resp

            if not err.retryable:
                raise err
            if attempt == attempts - 1:
                raise self._exhausted(err, attempts)

            delay = self._retry_delay(err, attempt)
            logger.warning("%s: %s — retrying in %.1fs (attempt %d/%d)",
                           err.code, err.message, delay, attempt + 1, attempts)
            self._wait(delay, cancel_event)

        # Should never reach here
        raise RetryExhaustedError("Request exhausted retries",
                                  cause=RetryExhaustedError.CAUSE_NETWORK, attempts=attempts)

    def post(self, url: str, cancel_event: Optional[threading.Event] = None, **kwargs) -> requests.Response:
        return self.request('POST', url, cancel_event=cancel_event, **kwargs)

    # ── Classification ────────────────────────────────────────────────

    @staticmethod
    def _classify(resp: requests.Response) -> Optional[TaskError]:
        """The error a response stands for, or None for a 2xx/3xx. Error responses are closed."""
        status = resp.status_code
        if status < 400:
            return None

        if status == 429:
            retry_after = parse_retry_after(resp.headers.get('Retry-After'))
            resp.close()
            return RateLimitError("Rate limited (429)", retry_after=retry_after)

        message = error_message_from_response(resp)
        resp.close()
        if status in (401, 403):
            return AuthenticationError(f"Credential rejected ({status}): {message}", status_code=status)
        if status >= 500:
            return ServerError(message, status_code=status)
        return EndpointError(f"Endpoint returned {status}: {message}", status_code=status)

    def _retry_delay(self, err: TaskError, attempt: int) -> float:
        if isinstance(err, RateLimitError):
            return err.retry_after if err.retry_after is not None else self.rate_limit_default_wait
        return calculate_backoff_delay(attempt, self.backoff_base)

    @staticmethod
    def _exhausted(err: TaskError, attempts: int) -> RetryExhaustedError:
        if isinstance(err, RateLimitError):
            exhausted = RetryExhaustedError(
                f"Rate limited (429) after {attempts} attempts",
                cause=RetryExhaustedError.CAUSE_RATE_LIMIT, attempts=attempts)
        elif isinstance(err, ServerError):
            exhausted = RetryExhaustedError(
                f"Server error {err.status_code} after {attempts} attempts: {err.message}",
                cause=RetryExhaustedError.CAUSE_SERVER, attempts=attempts)
        else:
            exhausted = RetryExhaustedError(
                f"Network error after {attempts} attempts: {err.message}",
                cause=RetryExhaustedError.CAUSE_NETWORK, attempts=attempts)
        exhausted.__cause__ = err
        return exhausted

    # ── Waiting ───────────────────────────────────────────────────────

    def _wait(self, delay: float, cancel_event: Optional[threading.Event]):
        """Sleep for `delay` seconds; wake early and raise on cancellation."""
        if self._sleep is not None:
            self._sleep(delay)
        elif cancel_event is not None:
            if cancel_event.wait(delay):
                raise TaskCancelled()
        else:
            time.sleep(delay)
        self._check_cancelled(cancel_event)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise TaskCancelled()
