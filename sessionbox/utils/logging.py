"""Structured logging setup."""

import logging
import logging.handlers
import sys

import structlog

from ..config import LoggingConfig

_configured = False


def setup_logging(config: LoggingConfig, force: bool = False) -> None:
    """Configure structlog on top of the standard logging module.

    Args:
        config: Logging settings
        force: Reconfigure even if logging was already set up
    """
    global _configured
    if _configured and not force:
        return

    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handlers = [logging.StreamHandler(sys.stdout)]
    if config.log_file:
        handlers.append(
            logging.handlers.RotatingFileHandler(
                config.log_file,
                maxBytes=config.log_max_size_mb * 1024 * 1024,
                backupCount=config.log_backup_count,
            )
        )

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    # The Docker SDK and urllib3 are chatty at DEBUG
    for noisy in ("docker", "urllib3"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    _configured = True
