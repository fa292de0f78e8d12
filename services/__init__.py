"""Service modules for the cohort analytics application."""

__all__ = [
    "cohort_analytics",
]
