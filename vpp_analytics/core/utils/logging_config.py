"""structlog setup for processes embedding the analytics core.

configure_logging() installs the processor chain once per process; the
service calls it from ``initialize`` with the ``debug``/``log_json``
settings. bind_vpp_context() tags every log line emitted while a single
VPP is being evaluated by the monitoring scheduler.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

import structlog

_configured = False


def configure_logging(debug: bool = False, json_output: bool = False) -> bool:
    """Configure structlog processors on the first call.

    Args:
        debug: Emit debug events (cache hits, solver details) when True.
        json_output: Render one JSON object per line instead of console text.

    Returns:
        True if this call installed the configuration, False if it was
        already in place.
    """
    global _configured
    if _configured:
        return False

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True
    return True


@contextmanager
def bind_vpp_context(vpp_id: str) -> Iterator[None]:
    """Bind ``vpp_id`` into structlog contextvars for the enclosed block."""
    with structlog.contextvars.bound_contextvars(vpp_id=vpp_id):
        yield
