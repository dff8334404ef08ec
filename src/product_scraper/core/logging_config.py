"""Structured JSON logging configuration using structlog.

Call ``configure_logging()`` once at application startup (``api/main.py``).
Modules then log through either API:

Engine modules (scheduler, fetchers, normalizer)::

    import logging
    logger = logging.getLogger(__name__)
    logger.info("scheduler: job %s batch %d done", job_id, batch_index)

API modules (richer context binding)::

    import structlog
    logger = structlog.get_logger(__name__)
    logger.info("scrape_job_created", job_id=job_id, recipe=recipe_name)

Two context variables are merged into every record:

- ``request_id`` - set by the request middleware in ``api/main.py``.
- ``job_id`` - set by the scheduler for the lifetime of a job's run so that
  log lines emitted by fetchers and the extractor can be attributed to a job
  without threading the id through every call.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, WrappedLogger

# ---------------------------------------------------------------------------
# Context variables
# ---------------------------------------------------------------------------

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
"""Per-request ID set by the HTTP middleware and echoed in the envelope."""

job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
"""ID of the job whose pipeline is executing in the current task."""


# ---------------------------------------------------------------------------
# Custom processors
# ---------------------------------------------------------------------------

_SECRET_SUBSTRINGS: frozenset[str] = frozenset({
    "password",
    "secret",
    "token",
    "cookie",
    "authorization",
    "proxy_auth",
    "api_key",
})
"""Lower-cased substrings of event-dict keys whose values are redacted.

Target sites are sometimes scraped with session cookies or proxy credentials
passed in headers; those must never reach a log aggregator.
"""


def _redact_secrets(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Replace values of secret-bearing keys with ``"[REDACTED]"``.

    Top-level keys and the keys of nested dicts one level deep (typically
    ``headers={...}``) are matched case-insensitively.
    """
    for key in list(event_dict.keys()):
        if any(secret in key.lower() for secret in _SECRET_SUBSTRINGS):
            event_dict[key] = "[REDACTED]"
            continue
        value = event_dict[key]
        if isinstance(value, dict):
            for nested_key in list(value.keys()):
                if any(secret in str(nested_key).lower() for secret in _SECRET_SUBSTRINGS):
                    value[nested_key] = "[REDACTED]"
    return event_dict


def _inject_context_ids(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Add ``request_id`` and ``job_id`` from their context variables when set.

    Runs after ``merge_contextvars`` so explicitly bound values win.
    """
    request_id = request_id_var.get()
    if request_id is not None and "request_id" not in event_dict:
        event_dict["request_id"] = request_id
    job_id = job_id_var.get()
    if job_id is not None and "job_id" not in event_dict:
        event_dict["job_id"] = job_id
    return event_dict


# ---------------------------------------------------------------------------
# Public configuration entry-point
# ---------------------------------------------------------------------------


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structlog and stdlib logging.

    Non-DEBUG levels render newline-delimited JSON; ``DEBUG`` switches to
    structlog's coloured ``ConsoleRenderer`` for local development.  Every
    record carries ``timestamp``, ``level``, ``logger``, ``event`` and, when
    available, ``request_id`` / ``job_id``.

    Safe to call repeatedly (tests do): the root handler list is replaced,
    not appended to.

    Args:
        log_level: Logging verbosity name, case-insensitive.
    """
    level_name = log_level.upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    is_development = level_name == "DEBUG"

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_ids,
        _redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if is_development:
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(colors=True)
    else:
        renderer = structlog.processors.JSONRenderer()

    # stdlib records (``logging.getLogger``) go through the same chain.
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    if not is_development:
        for noisy_logger in ("uvicorn.access", "httpx", "httpcore", "aiosqlite"):
            logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
