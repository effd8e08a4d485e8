"""
Security utilities for feedscribe.
- Media tool execution: ffmpeg/ffprobe only, argument lists only, always bounded by a timeout
- Secret masking for log lines
"""

import subprocess
import logging

logger = logging.getLogger(__name__)

ALLOWED_TOOLS = frozenset({"ffmpeg", "ffprobe"})


# ── Media tools ───────────────────────────────────────────────────────

def run_subprocess(args: list[str], timeout: float, *, text: bool) -> subprocess.CompletedProcess:
    """
    Run one media tool with captured output and no shell.
    Raises TypeError for a command string, ValueError for a tool outside
    ALLOWED_TOOLS; subprocess.TimeoutExpired / FileNotFoundError propagate.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")
    if not args or args[0] not in ALLOWED_TOOLS:
        raise ValueError(f"Refusing to run {args[0] if args else '<empty>'!r}")

    logger.debug("Running %s (timeout %ss): %s", args[0], timeout,
                 ' '.join(str(a) for a in args[1:]))
    return subprocess.run(list(args), shell=False, capture_output=True,
                          text=text, timeout=timeout)


def run_subprocess_capture(args: list[str], timeout: float = 300) -> subprocess.CompletedProcess:
    """Probe-style call: stdout/stderr decoded as text."""
    return run_subprocess(args, timeout, text=True)


def run_subprocess_binary(args: list[str], timeout: float = 300) -> subprocess.CompletedProcess:
    """Decode-style call: stdout kept as raw bytes (PCM)."""
    return run_subprocess(args, timeout, text=False)


# ── Secrets ───────────────────────────────────────────────────────────

def mask_secret(secret: str | None) -> str:
    """Short, non-reversible form of an API key for log lines."""
    if not secret:
        return "<none>"
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}…"
