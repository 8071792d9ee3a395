"""
Utility functions for studyarchiver.

Includes logging, retries, progress reporting, and console output.
"""

import json
import logging
import random
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.logging import RichHandler

from studyarchiver.config import RetryPolicy
from studyarchiver.errors import is_transient


# Global console for pretty output
console = Console()

logger = logging.getLogger(__name__)


PLAIN_FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# LogRecord attributes copied into structured output when a call sets them
STRUCTURED_EXTRAS = ("event", "study", "metadata")


def setup_logging(log_file: Path, log_level: str = "INFO", log_format: str = "structured", console_output: bool = True) -> logging.Logger:
    """
    Route the "studyarchiver" logger tree to a log file and, optionally, the console.

    Args:
        log_file: Destination file; parent directories are created
        log_level: DEBUG, INFO, WARNING or ERROR
        log_format: "structured" writes JSON lines to the file; "pretty"
            writes plain lines and uses rich on the console
        console_output: Also log to the console

    Returns:
        The configured "studyarchiver" logger
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)

    archiver_logger = logging.getLogger("studyarchiver")
    archiver_logger.setLevel(log_level.upper())
    for handler in list(archiver_logger.handlers):
        archiver_logger.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(
        StructuredFormatter() if log_format == "structured" else logging.Formatter(PLAIN_FILE_FORMAT)
    )
    archiver_logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            archiver_logger.addHandler(RichHandler(console=console, rich_tracebacks=True, show_time=False))
        else:
            stream = logging.StreamHandler()
            stream.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
            archiver_logger.addHandler(stream)

    return archiver_logger


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, carrying the event/study/metadata extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({key: getattr(record, key) for key in STRUCTURED_EXTRAS if hasattr(record, key)})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def backoff_delay(policy: RetryPolicy, retry_number: int) -> float:
    """
    Delay before the given retry (0-based).

    min(max_timeout, min_timeout * factor ** retry_number * r), with r drawn
    from [1, 2) when the policy is randomized and 1 otherwise.
    """
    jitter = random.uniform(1, 2) if policy.randomize else 1
    return min(policy.max_timeout, policy.min_timeout * (policy.factor ** retry_number) * jitter)


def retry_with_backoff(
    func: Callable[[], Any],
    policy: Optional[RetryPolicy] = None,
    retry_on: Callable[[BaseException], bool] = is_transient,
    description: str = "storage call",
    log: Optional[logging.Logger] = None,
) -> Any:
    """
    Retry a function with exponential backoff and jitter.

    Args:
        func: Zero-argument function to call
        policy: Backoff settings (defaults to RetryPolicy())
        retry_on: Predicate deciding whether an exception is retryable
        description: Label used in retry log messages
        log: Logger for retry messages

    Returns:
        Result of successful function call

    Raises:
        Exception: The last error, unchanged, once attempts are exhausted,
            or the first non-retryable error
    """
    policy = policy or RetryPolicy()
    log = log or logger
    attempt = 1

    while True:
        try:
            return func()

        except Exception as e:
            if not retry_on(e):
                raise

            if attempt >= policy.max_attempts:
                log.error(
                    f"{description}: all {policy.max_attempts} attempts failed: {e}",
                    extra={"event": "retry_exhausted", "metadata": {"attempts": attempt}},
                )
                raise

            wait_time = backoff_delay(policy, attempt - 1)
            log.warning(
                f"{description}: attempt {attempt} failed: {e}. Retrying in {wait_time:.1f}s...",
                extra={"event": "retry_scheduled", "metadata": {"attempt": attempt, "wait_seconds": wait_time}},
            )
            time.sleep(wait_time)
            attempt += 1


class ProgressReporter:
    """
    Emits per-stage progress events.

    Disabled by default; when disabled every call is a no-op.
    """

    def __init__(self, enabled: bool = False, log: Optional[logging.Logger] = None):
        self.enabled = enabled
        self.log = log or logging.getLogger("studyarchiver.progress")

    def emit(self, stage: str, study: Optional[str] = None, **metadata: Any) -> None:
        if not self.enabled:
            return
        message = f"progress: {stage}" + (f" {study}" if study else "")
        self.log.info(
            message,
            extra={"event": f"progress.{stage}", "study": study, "metadata": metadata},
        )


def format_duration(seconds: float) -> str:
    """Render a duration as "45s", "1m 23s" or "1h 2m 5s"."""
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _print_status(symbol: str, style: str, message: str) -> None:
    console.print(f"[bold {style}]{symbol}[/bold {style}] {message}")


def print_banner(title: str) -> None:
    console.rule(f"[bold blue]{title}[/bold blue]")


def print_success(message: str) -> None:
    _print_status("✓", "green", message)


def print_error(message: str) -> None:
    _print_status("✗", "red", message)


def print_warning(message: str) -> None:
    _print_status("⚠", "yellow", message)


def print_info(message: str) -> None:
    _print_status("ℹ", "cyan", message)
