import logging
import sys
from typing import Literal

import structlog
from structlog.types import Processor


def setup_logging(
    log_format: Literal["json", "console"] = "console",
    log_level: str = "INFO",
) -> None:
    """Configure structured logging with structlog.

    Logs go to stderr so that command output on stdout (server tables,
    destroy progress) stays clean and pipeable.

    Args:
        log_format: "json" for machine consumption, "console" for humans.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
        force=True,
    )
    # paramiko logs every transport negotiation at INFO
    logging.getLogger("paramiko").setLevel(max(numeric_level, logging.WARNING))
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=False),
        # server_id / stage bound by the pipeline
        structlog.contextvars.merge_contextvars,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer(sort_keys=False))
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.get_logger().debug(
        "logging_initialized",
        log_format=log_format,
        log_level=log_level,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Optional logger name, usually the caller's ``__name__``.
    """
    return structlog.get_logger(name)


def bind_build_context(**values) -> None:
    """Attach values (server_id, stage) to every log line of the current task."""
    structlog.contextvars.bind_contextvars(**values)


def clear_build_context() -> None:
    structlog.contextvars.clear_contextvars()
