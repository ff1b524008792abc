"""Logging configuration for the risk governor.

Every module obtains its logger through ``get_logger(__name__)``. State
transitions (kill-switch toggles, settlements, reconciliations) are
logged with ``log_with_context`` so that the key=value tail can be
grepped out of the operator log.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    level: str = "INFO",
    log_format: str | None = None,
    log_file: str | Path | None = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 30,
) -> None:
    """Configure logging for the application.

    Sets up the root logger with the given level and format. Logs always go
    to stdout; when ``log_file`` is given they are also written to a
    size-rotated file.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom format string. If None, uses default format.
        log_file: Optional path of a rotating log file
        max_bytes: Maximum size per log file before rotation
        backup_count: Number of rotated files to keep

    Example:
        >>> from src.utils.logging import setup_logging
        >>> setup_logging(level="DEBUG", log_file="logs/governor.log")
    """
    if log_format is None:
        log_format = DEFAULT_FORMAT

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                filename=path,
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
        )

    logging.basicConfig(
        level=numeric_level,
        format=log_format,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context: Any,
) -> None:
    """Log a message with structured context.

    Context is appended to the message in key=value format.

    Args:
        logger: Logger instance
        level: Log level (debug, info, warning, error, critical)
        message: Log message
        **context: Additional context fields

    Example:
        >>> log_with_context(
        ...     logger, "info", "Ledger settled",
        ...     market_id="0xabc", daily_pnl=-12.5, open_positions=3
        ... )
        # Logs: "Ledger settled | market_id=0xabc daily_pnl=-12.5 open_positions=3"
    """
    log_func = getattr(logger, level.lower())

    if context:
        context_str = " ".join(f"{k}={v}" for k, v in context.items())
        full_message = f"{message} | {context_str}"
    else:
        full_message = message

    log_func(full_message)
