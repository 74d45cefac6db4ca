"""
Structured logging for HvBackup using structlog.
"""

import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import structlog

# Chatty third-party loggers pulled in by the WMI backend
_NOISY_LOGGERS = ("comtypes", "wmi")


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[Path] = None,
    console_output: bool = True,
) -> None:
    """
    Configure structured logging for HvBackup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render console output as JSON lines
        log_file: Optional file path, always written as JSON
        console_output: Emit to stderr
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers = []

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=renderer,
                foreign_pre_chain=shared_processors,
            )
        )
        handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=shared_processors,
            )
        )
        handlers.append(file_handler)

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
        handlers=handlers,
        force=True,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = "hvbackup") -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


@contextmanager
def log_operation(
    logger: structlog.stdlib.BoundLogger, operation: str, **kwargs
) -> Iterator[structlog.stdlib.BoundLogger]:
    """
    Log the start and end of an administrative operation.

    Usage:
        with log_operation(log, "create_checkpoint", vm="demo") as op_log:
            ...

    Emits ``<operation>.started``, then ``<operation>.completed`` with the
    duration, or ``<operation>.failed`` with the error before re-raising.
    """
    log = logger.bind(operation=operation, **kwargs)
    start = time.monotonic()
    log.info(f"{operation}.started")

    try:
        yield log
    except Exception as e:
        log.error(
            f"{operation}.failed",
            error=str(e),
            error_type=type(e).__name__,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        raise
    log.info(
        f"{operation}.completed",
        duration_ms=round((time.monotonic() - start) * 1000, 2),
    )
