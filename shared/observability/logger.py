"""Structured logging for cohort reports.

Engine code logs through structlog. Rendered events travel over the standard
``logging`` module and end in a single loguru sink on stderr, so every line
carries the service name and, inside :func:`report_context`, the id of the
report being computed.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

import structlog
from loguru import logger as loguru_logger

__all__ = [
    "configure_logging",
    "generate_report_id",
    "get_logger",
    "report_context",
]


def _line_format(record: Mapping[str, Any]) -> str:
    extra = record["extra"]
    service = extra.get("service", "-")
    report_id = extra.get("report_id", "-")
    # Escape braces: loguru treats the returned value as a format template.
    message = str(record["message"]).replace("{", "{{").replace("}", "}}")
    return (
        f"{record['time']:%Y-%m-%dT%H:%M:%S.%f%z} {record['level'].name:<8} "
        f"[{service} report={report_id}] {message}\n"
    )


def _resolve_level(level: str | int) -> tuple[int, str]:
    """Look ``level`` up in loguru's registry.

    Raises ``ValueError`` for names loguru does not know, which is what the
    command line turns into a usage error.
    """

    if isinstance(level, int):
        name = logging.getLevelName(level)
        if not isinstance(name, str) or name.startswith("Level "):
            raise ValueError(f"Unknown log level: {level}")
        level = name
    try:
        known = loguru_logger.level(level.upper())
    except ValueError:
        raise ValueError(f"Unknown log level: {level}") from None
    return known.no, known.name


class _LoguruBridge(logging.Handler):
    """Hand records from the standard library over to the loguru sink."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        loguru_logger.opt(exception=record.exc_info).log(level, record.getMessage())


def configure_logging(
    *,
    service_name: str | None = None,
    level: str | int = "INFO",
    json_logs: bool = True,
) -> None:
    """Install the loguru sink and the structlog pipeline.

    Calling it again replaces the sink, so the level and renderer of the last
    call win.
    """

    number, name = _resolve_level(level)

    loguru_logger.remove()
    loguru_logger.add(
        sys.stderr, level=name, format=_line_format, backtrace=False, diagnose=False
    )

    logging.basicConfig(handlers=[_LoguruBridge()], level=number, force=True)
    logging.captureWarnings(True)

    renderer: Any = (
        structlog.processors.JSONRenderer(sort_keys=True)
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    if service_name:
        loguru_logger.configure(extra={"service": service_name})
        structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name) if name else structlog.get_logger()


def generate_report_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def report_context(report_id: str | None = None, **extra: Any) -> Iterator[str]:
    """Tag every entry logged inside the block with one report id.

    Values bound before entering are restored on exit, nested reports included.
    """

    extra.pop("report_id", None)
    rid = report_id or generate_report_id()
    with structlog.contextvars.bound_contextvars(report_id=rid, **extra):
        with loguru_logger.contextualize(report_id=rid, **extra):
            yield rid
