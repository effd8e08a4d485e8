#!/usr/bin/env python3
"""
feedscribe v1.0.0 — Command-line entry point.
Transcribes one media file (optionally cleaning it up with a text model)
and prints the result to stdout. Progress goes to stderr.
"""

import argparse
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from feedscribe.core.config import AppConfig
from feedscribe.core.constants import APP_NAME, APP_VERSION, LOG_DIR, LOG_FORMAT, TaskStatus
from feedscribe.core.error_codes import TaskError
from feedscribe.core.service import TranscriptionService

logger = logging.getLogger(APP_NAME)


def setup_logging(log_file: Path, verbose: bool = False):
    """File logging always; stderr too with --verbose."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [logging.FileHandler(log_file, encoding="utf-8")]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feedscribe-transcribe",
        description="Transcribe an audio/video file and optionally clean up the text.",
    )
    parser.add_argument("file", type=Path,
                        help="media file to transcribe (or a text file with --text)")
    parser.add_argument("--optimize", action="store_true",
                        help="clean up the transcript with the configured text model")
    parser.add_argument("--text", action="store_true",
                        help="FILE is an existing transcript; only run the optimization")
    parser.add_argument("--credential-id", default=None,
                        help="use this credential from the pool instead of the least busy one")
    parser.add_argument("--config", type=Path, default=None,
                        help="path to config.json")
    parser.add_argument("--log-file", type=Path, default=LOG_DIR / "app.log",
                        help="log file location")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="also log to stderr")
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    return parser


def _print_progress(event):
    label = event.status
    sys.stderr.write(f"\r[{label:>12}] {event.progress:3d}%")
    sys.stderr.flush()


def run(args) -> int:
    config = AppConfig(args.config) if args.config else AppConfig()
    service = TranscriptionService(config).init()

    if args.text:
        text = args.file.read_text(encoding="utf-8")
        task_id = service.optimize_text(args.file.stem, text, args.file.name)
    else:
        task_id = service.transcribe(args.file, auto_optimize=args.optimize,
                                     credential_id=args.credential_id)

    try:
        with service.events(task_id) as stream:
            for event in stream:
                _print_progress(event)
    except KeyboardInterrupt:
        service.cancel_task(task_id)
        sys.stderr.write("\nCancelling...\n")

    task = service.wait(task_id)
    sys.stderr.write("\n")

    if task is None:
        return 1
    if task.status == TaskStatus.ERROR:
        sys.stderr.write(f"Error: {task.error}\n")
        return 1
    if task.warning:
        sys.stderr.write(f"Warning: {task.warning}\n")

    if task.optimized_text:
        if task.optimized_title:
            print(task.optimized_title)
            print()
        print(task.optimized_text)
    else:
        print(task.raw_text)
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file, args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("=" * 60)

    try:
        return run(args)
    except (TaskError, FileNotFoundError) as e:
        msg = e.message if isinstance(e, TaskError) else str(e)
        logger.error("%s", msg)
        sys.stderr.write(f"Error: {msg}\n")
        return 1
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        logger.critical("Fatal error: %s\n%s", error_msg, traceback.format_exc())
        sys.stderr.write(f"Fatal error: {error_msg}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())
