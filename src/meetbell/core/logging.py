"""Structured logging for meetbell.

Uses structlog's ProcessorFormatter to transparently upgrade all
``logging.getLogger(__name__)`` call sites.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

Context bound with :func:`log_context` (the instance name at startup, the
trigger name while a reminder fires, the provider while it syncs) is merged
into every record, along with the current OTel trace ids.  Credential values
are redacted from every rendered message.
"""

from __future__ import annotations

import logging
import re
import sys

import structlog
from opentelemetry import trace

_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "asyncio",
)

_KEY_VALUE_SECRET = re.compile(
    r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)"
)
_QUOTED_SECRET = re.compile(
    r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2"""
)
_BEARER = re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9._~+/=-]+")

log_context = structlog.contextvars.bound_contextvars


def redact_credential_values(message: str) -> str:
    """Redact OAuth credential values and bearer tokens from *message*."""
    redacted = _KEY_VALUE_SECRET.sub(r"\1=[REDACTED]", message)
    redacted = _QUOTED_SECRET.sub(r'\1"[REDACTED]"', redacted)
    return _BEARER.sub(r"\1 [REDACTED]", redacted)


def redact_credentials(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Apply :func:`redact_credential_values` to the rendered message."""
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = redact_credential_values(event)
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` when an OTel span is recording."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _build_processors(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
        redact_credentials,
    ]


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    instance_name: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        ``"text"`` for colored console, ``"json"`` for JSON lines.
    instance_name:
        Bound as ``instance`` on every record logged from this context.
    """
    if instance_name:
        structlog.contextvars.bind_contextvars(instance=instance_name)

    if fmt == "json":
        processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
