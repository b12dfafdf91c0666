"""Loguru configuration shared by the auto-installer command line tools.

Every tool logs to stderr for the person watching the console and to a plain
file that survives on the installation medium. Records carry three extra
fields, ``source``, ``job_id`` and ``tags``, which the file format prints and
tests can inspect.
"""

from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(os.environ.get("AUTO_INSTALLER_LOG_DIR", "/tmp"))

DEFAULT_EXTRA = {"source": "auto-installer", "job_id": "-", "tags": []}

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> "
    "<level>{level: <7}</level> "
    "<cyan>[{extra[source]}]</cyan> "
    "{message}"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} {level: <7} "
    "[{extra[source]}] ({extra[job_id]}) {message}"
)


def _log_path(log_file: str | Path) -> Path:
    path = Path(log_file)
    if path.is_absolute() or path.parent != Path("."):
        return path
    return DEFAULT_LOG_DIR / path


def new_job_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def setup_logging(
    log_file: str | Path | None = None,
    *,
    debug: bool = False,
    enqueue: bool = True,
) -> Logger:
    """
    Replace all loguru sinks with the console and, optionally, a log file.

    The console shows INFO and above (DEBUG with ``debug``). The file always
    records DEBUG and above so failed installations can be examined after
    the fact.

    Args:
        log_file: File name or path. A bare name lands in DEFAULT_LOG_DIR.
        debug: Show DEBUG records on the console too
        enqueue: Hand records to a writer thread (tests pass False)
    """
    logger.remove()
    logger.configure(extra=dict(DEFAULT_EXTRA))

    logger.add(
        sys.stderr,
        level="DEBUG" if debug else "INFO",
        format=CONSOLE_FORMAT,
        colorize=True,
        enqueue=enqueue,
        backtrace=False,
        diagnose=False,
    )

    if log_file is not None:
        path = _log_path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            path,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation="10 MB",
            enqueue=enqueue,
            backtrace=True,
            diagnose=False,
        )

    return logger


def shutdown_logging() -> None:
    """Wait for queued records, then drop every sink."""
    logger.complete()
    logger.remove()


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """Return the global logger bound to whichever fields are given."""
    context: dict[str, object] = {}
    if source is not None:
        context["source"] = source
    if job_id is not None:
        context["job_id"] = job_id
    if tags is not None:
        context["tags"] = list(tags)
    return logger.bind(**context)


@contextmanager
def operation_context(operation: str, **details) -> Iterator[Logger]:
    """
    Log the start and outcome of ``operation`` together with its duration.

    ``details`` are attached to every record emitted inside the block, from
    any module. The block's exception, if any, is logged and re-raised.

    Example:
        with operation_context("install", filesystem="zfs (RAID1)") as log:
            log.info("Calling low-level installer")
    """
    job_id = new_job_id(operation)
    title = operation.capitalize()
    log = logger.bind(source=operation, job_id=job_id, tags=[operation])

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        started = time.monotonic()
        log.info(f"{title} started")
        try:
            yield log
        except Exception as error:
            log.error(
                f"{title} failed after {time.monotonic() - started:.2f}s: "
                f"{type(error).__name__}: {error}"
            )
            raise
        log.success(f"{title} completed in {time.monotonic() - started:.2f}s")


class LoggerFactory:
    """Preconfigured loggers for the main areas of the installer."""

    @staticmethod
    def for_answer() -> Logger:
        return logger.bind(source="answer", tags=["answer"])

    @staticmethod
    def for_udev() -> Logger:
        """Logger for udev property capture and device filters."""
        return logger.bind(source="udev", tags=["udev", "hardware"])

    @staticmethod
    def for_installer(job_id: str | None = None) -> Logger:
        """Logger for messages relayed from the low-level installer.

        A fresh ``install-*`` job id is generated when none is given.
        """
        return logger.bind(
            source="low-level", job_id=job_id or new_job_id("install"), tags=["installer"]
        )

    @staticmethod
    def for_progress(job_id: str | None = None) -> Logger:
        return logger.bind(
            source="low-level", job_id=job_id or "-", tags=["installer", "progress"]
        )

    @staticmethod
    def for_fetch() -> Logger:
        return logger.bind(source="fetch", tags=["fetch", "network"])
