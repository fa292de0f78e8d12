"""Cohort classification engine for HIV-care reporting."""

from pathlib import Path

from dotenv import load_dotenv

from .errors import (
    ClassificationAmbiguity,
    ClassificationAmbiguityError,
    CohortEngineError,
    DataAccessError,
    InvalidPeriodError,
    UnknownMetricError,
)
from .metrics import AgeCategory, MetricRequest, MetricResult
from .service import CohortAnalyticsService, CohortReport

__all__ = [
    "__version__",
    "AgeCategory",
    "ClassificationAmbiguity",
    "ClassificationAmbiguityError",
    "CohortAnalyticsService",
    "CohortEngineError",
    "CohortReport",
    "DataAccessError",
    "InvalidPeriodError",
    "MetricRequest",
    "MetricResult",
    "UnknownMetricError",
]

__version__ = "0.1.0"

load_dotenv(Path(__file__).resolve().parents[2] / ".env", override=False)
