"""
Structured logging setup
========================
JSON log lines via structlog, shared by every component.

Components bind their own name:

    log = structlog.get_logger().bind(component="ledger_store")
    log.info("sale_recorded", session_id=session_id)

pip install structlog
"""

import logging

import structlog


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog once per process."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def level_from_name(name: str) -> int:
    """Map an env-style level name ("debug", "WARNING") to a logging level."""
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO
