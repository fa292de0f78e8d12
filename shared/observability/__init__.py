"""Observability utilities shared across cohort analytics services."""

from .logger import (
    configure_logging,
    generate_report_id,
    get_logger,
    report_context,
)

__all__ = [
    "configure_logging",
    "generate_report_id",
    "get_logger",
    "report_context",
]
