"""Structured logging with per-run context using structlog and contextvars."""

import logging
from contextvars import ContextVar

import structlog

# Context variables for the recipe run in progress
current_run_id: ContextVar[str | None] = ContextVar("current_run_id", default=None)
current_recipe_name: ContextVar[str | None] = ContextVar("current_recipe_name", default=None)

_configured = False


def setup_structured_logging(level: str = "INFO") -> None:
    """Configure structlog with JSON output and per-run context.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    global _configured
    if _configured:
        return

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
    )

    # browser-use and HTTP clients are chatty at INFO
    for logger_name in ("browser_use", "httpx", "httpcore", "cdp_use"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    _configured = True


def bind_run_context(run_id: str, recipe_name: str) -> None:
    """Bind run context for all subsequent logs in this async context.

    Args:
        run_id: Unique run identifier
        recipe_name: Name of the recipe being replayed
    """
    current_run_id.set(run_id)
    current_recipe_name.set(recipe_name)
    structlog.contextvars.bind_contextvars(run_id=run_id, recipe_name=recipe_name)


def clear_run_context() -> None:
    """Clear run context after a recipe run completes."""
    current_run_id.set(None)
    current_recipe_name.set(None)
    structlog.contextvars.clear_contextvars()


def get_current_run_id() -> str | None:
    """Get the current run ID from context."""
    return current_run_id.get()
