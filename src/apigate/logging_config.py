"""structlog rendering for the gateway's stdlib loggers.

Modules log through ``logging.getLogger(__name__)``. The root handler formats
every record with structlog, so request context bound by the middleware
(trace id, client id) and ``extra=`` fields appear on each line.
"""

import logging
import sys

import structlog

# Per-request access and SQL echo lines would drown the gateway's own events
_QUIETED_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx")


def _pre_chain() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_logging(log_level: str = "info", json_output: bool = False) -> None:
    """Install the structlog formatter on the root logger.

    ``json_output`` selects one JSON object per line for deployments; local
    mode gets the coloured console renderer.
    """
    pre_chain = _pre_chain()
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIETED_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_request_context(trace_id: str, client_id: str | None = None) -> None:
    """Attach the trace id, and the client id once authenticated, to later log lines."""
    if client_id:
        structlog.contextvars.bind_contextvars(trace_id=trace_id, client_id=client_id)
    else:
        structlog.contextvars.bind_contextvars(trace_id=trace_id)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
