"""Logging setup.

Modules log through the standard library (`logging.getLogger(__name__)`);
this installs one root handler whose formatter runs every record through a
structlog processor chain and renders it as console text or one JSON object
per line. Fields passed with `extra=` are kept as top-level keys.
"""

import logging
import sys

import structlog
from structlog.types import Processor

# Applied to every record before rendering
SHARED_PROCESSORS: list[Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def build_formatter(fmt: str = "console") -> structlog.stdlib.ProcessorFormatter:
    """Formatter for stdlib handlers; `fmt` is "json" or "console"."""
    if fmt == "json":
        final: list[Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=SHARED_PROCESSORS,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *final],
    )


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    """Install a single stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(fmt))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    # pypdf warns on every malformed xref; keep it but at WARNING only
    logging.getLogger("pypdf").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
