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
    os.environ.get("GRUB_RECOVERY_LOG_DIR", "/var/log/grub-recovery")
)

# Tool output echoed line by line from chroot commands
_COMMAND_OUTPUT_TAG = "command-output"


def _should_log_command_output(record) -> bool:
    """Keep raw command output out of the console unless tracing."""
    tags = record["extra"].get("tags", [])
    if _COMMAND_OUTPUT_TAG in tags:
        return record["level"].no <= logger.level("TRACE").no or (
            record["level"].no >= logger.level("WARNING").no
        )
    return True


def _should_log_progress(record) -> bool:
    """Filter per-probe completion ticks - only show in TRACE mode."""
    if record["extra"].get("event_type") == "probe_progress":
        return record["level"].no <= logger.level("TRACE").no
    return True


def _combined_filter(record) -> bool:
    """Combined filter for all console suppression rules."""
    return _should_log_command_output(record) and _should_log_progress(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: failed repairs, failed rollbacks, leaked mounts
    - SUCCESS/INFO: phase transitions, health scores, checkpoints
    - DEBUG: probe details, every external command
    - TRACE: raw output of chroot commands

    Log Files:
    - operations.log: INFO+ events (20 MB rotation, 30 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (30 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to /var/log/grub-recovery)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "<blue>{extra[job_id]: <17}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning(f"Log directory {log_dir} unavailable, file logging disabled: {error}")
        return logger

    # SINK 2: Operations Log (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="20 MB",
        retention="30 days",
        compression="gz",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "[PID:{process}] | "
            "{extra[source]: <12} | "
            "{extra[job_id]: <17} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="gz",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <17} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="30 days",
        compression="gz",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["repair", "chroot"])
        source: Source component (e.g., "sandbox", "diagnostics")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_job_id(operation: str) -> str:
    return f"{operation}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, *, job_id: str | None = None, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "repair", "backup", "diagnostics")
        job_id: Reuse an existing job identifier instead of generating one
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("backup", disk="/dev/sda") as log:
            log.debug("Copying GRUB configuration")
    """
    job_id = job_id or new_job_id(operation)

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the component.
    """

    @staticmethod
    def for_detection() -> Logger:
        """Logger for system profile resolution."""
        return logger.bind(source="detect", tags=["detect", "system"])

    @staticmethod
    def for_diagnostics(job_id: str | None = None) -> Logger:
        """Logger for health probes and report aggregation."""
        extras = {"job_id": job_id} if job_id else {}
        return logger.bind(source="diagnostics", tags=["diagnostics", "probe"], **extras)

    @staticmethod
    def for_checkpoint(job_id: str | None = None) -> Logger:
        """Logger for snapshot and archive backups."""
        extras = {"job_id": job_id} if job_id else {}
        return logger.bind(source="checkpoint", tags=["checkpoint", "backup"], **extras)

    @staticmethod
    def for_sandbox() -> Logger:
        """Logger for chroot mount setup and teardown."""
        return logger.bind(source="sandbox", tags=["sandbox", "mount"])

    @staticmethod
    def for_repair(job_id: str | None = None) -> Logger:
        """Logger for the repair state machine."""
        if job_id is None:
            job_id = new_job_id("repair")
        return logger.bind(job_id=job_id, source="repair", tags=["repair"])

    @staticmethod
    def for_command() -> Logger:
        """Logger for raw output of external tools."""
        return logger.bind(source="command", tags=["command", _COMMAND_OUTPUT_TAG])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, configuration and metrics."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging common events with consistent fields so the
    structured JSON log can be filtered by ``event_type``.
    """

    @staticmethod
    def log_health_report(log: Logger, score: int, total_issues: int, **extra) -> None:
        """Log an aggregated health report."""
        log.info(
            f"Health Score: {score}/100 (Issues: {total_issues})",
            event_type="health_report",
            health_score=score,
            total_issues=total_issues,
            **extra,
        )

    @staticmethod
    def log_state_transition(log: Logger, previous: str, current: str, **extra) -> None:
        """Log a repair state machine transition."""
        log.debug(
            f"State {previous} -> {current}",
            event_type="state_transition",
            previous_state=previous,
            current_state=current,
            **extra,
        )

    @staticmethod
    def log_checkpoint_created(log: Logger, kind: str, location: str, **extra) -> None:
        """Log a created checkpoint."""
        log.success(
            f"Checkpoint created ({kind}): {location}",
            event_type="checkpoint_created",
            checkpoint_kind=kind,
            location=location,
            **extra,
        )

    @staticmethod
    def log_attempt_finished(log: Logger, outcome: str, **extra) -> None:
        """Log the final outcome of a repair attempt."""
        log.info(
            f"Repair attempt finished: {outcome}",
            event_type="repair_attempt",
            outcome=outcome,
            **extra,
        )
