"""Loguru configuration for romvault.

Every module logs through the shared loguru ``logger`` with a bound
``source`` (see :class:`LoggerFactory`). ``setup_logging`` is called once by
the CLI and decides where records end up:

- stderr: INFO by default, DEBUG with ``--debug``, TRACE with ``--trace``
- ``operations.log``: INFO+ for every run
- ``debug.log``: only with ``--debug``/``--trace``
- ``structured.jsonl``: INFO+ serialized records, one JSON object per line

Raw output of external tools is tagged ``command-output`` and only reaches
stderr at TRACE level.
"""

from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "ROMVAULT_LOG_DIR",
        Path.home() / ".local" / "state" / "romvault" / "logs",
    )
)

COMMAND_OUTPUT_TAG = "command-output"

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> <level>{level: <7}</level> "
    "<cyan>[{extra[source]}]</cyan> {message}"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} {level: <7} [{extra[source]}] {extra[job_id]} {message}"
_DEBUG_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} {level: <7} [{extra[source]}] "
    "{extra[job_id]} {extra[tags]} {name}:{line} {message}"
)


def _should_log_command(record) -> bool:
    """Hide raw command output unless the record is at TRACE level."""
    if record["level"].no >= logger.level("WARNING").no:
        return True
    if COMMAND_OUTPUT_TAG in record["extra"].get("tags", []):
        return record["level"].no <= logger.level("TRACE").no
    return True


def _add_file_sink(path: Path, level: str, fmt: str, **options) -> None:
    logger.add(
        path,
        level=level,
        format=fmt,
        rotation=options.pop("rotation", "5 MB"),
        retention=options.pop("retention", "7 days"),
        compression="zip",
        **options,
    )


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """Replace all loguru handlers with romvault's sinks.

    Args:
        debug: Log DEBUG to stderr and write debug.log
        trace: Log TRACE (including raw command output) everywhere
        log_dir: Directory for log files (default: ``ROMVAULT_LOG_DIR`` or
            ``~/.local/state/romvault/logs``)
        file_logging: False to log to stderr only

    An unusable log directory is reported and file logging skipped; it never
    stops a backup or restore.
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "romvault"})

    console_level = "TRACE" if trace else "DEBUG" if debug else "INFO"
    logger.add(
        sys.stderr,
        level=console_level,
        format=_CONSOLE_FORMAT,
        filter=_should_log_command,
        colorize=True,
        backtrace=False,
        diagnose=False,
    )

    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning(f"Cannot create log directory {log_dir}: {error}")
        return logger

    _add_file_sink(log_dir / "operations.log", "INFO", _FILE_FORMAT, diagnose=False)
    if debug or trace:
        _add_file_sink(
            log_dir / "debug.log",
            "TRACE" if trace else "DEBUG",
            _DEBUG_FILE_FORMAT,
            rotation="10 MB",
            retention="3 days",
            backtrace=True,
            diagnose=True,
        )
    _add_file_sink(
        log_dir / "structured.jsonl",
        "INFO",
        "{message}",
        rotation="10 MB",
        serialize=True,
    )
    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """Return the shared logger with ``job_id``, ``tags`` and ``source`` bound."""
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """Give one backup or restore run its own job id.

    Every record logged inside the block, by any module, carries the job id.
    The start of the run is logged at INFO and a normal exit at DEBUG with
    the duration; an exception escaping the block is logged at ERROR and
    re-raised.

    Example:
        with operation_context("restore", rom_id="dual") as log:
            ok = orchestrator.run(rom, input_dir, targets)
            log.info("=== Finished ===" if ok else "=== Failed ===")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"
    title = operation.capitalize()

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        started = time.monotonic()
        log.info(f"{title} started", **details)
        try:
            yield log
        except Exception as error:
            log.error(
                f"{title} failed",
                error=str(error),
                error_type=type(error).__name__,
                duration_seconds=round(time.monotonic() - started, 2),
            )
            raise
        log.debug(
            f"{title} finished",
            duration_seconds=round(time.monotonic() - started, 2),
        )


class LoggerFactory:
    """Loggers pre-bound with the source and tags of each subsystem."""

    @staticmethod
    def for_backup() -> Logger:
        return logger.bind(source="backup", tags=["backup", "storage"])

    @staticmethod
    def for_restore() -> Logger:
        return logger.bind(source="restore", tags=["restore", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Mount, unmount and namespace operations."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_system() -> Logger:
        """Startup, configuration and the ROM registry."""
        return logger.bind(source="system", tags=["system"])
