"""Exception hierarchy for the cohort analytics engine."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "ClassificationAmbiguity",
    "ClassificationAmbiguityError",
    "CohortEngineError",
    "DataAccessError",
    "InvalidPeriodError",
    "UnknownMetricError",
]


class CohortEngineError(RuntimeError):
    """Base error for cohort engine operations."""


class DataAccessError(CohortEngineError):
    """Raised when the clinical data store cannot be reached or read."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.original = original


class InvalidPeriodError(CohortEngineError, ValueError):
    """Raised when reporting period boundaries cannot be used."""

    def __init__(self, message: str, *, start: object = None, end: object = None) -> None:
        super().__init__(message)
        self.start = start
        self.end = end


class UnknownMetricError(CohortEngineError, KeyError):
    """Raised when a metric name is not registered in the catalogue."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Metric '{name}' is not registered.")
        self.name = name

    def __str__(self) -> str:
        return self.args[0]


@dataclass(frozen=True, slots=True)
class ClassificationAmbiguity:
    """Reviewable record of a patient the engine could not classify cleanly."""

    patient_id: int
    reason: str
    cohort: str | None = None


class ClassificationAmbiguityError(CohortEngineError):
    """Raised for ambiguous patient state when the policy is ``raise``."""

    def __init__(self, ambiguity: ClassificationAmbiguity) -> None:
        super().__init__(
            f"Patient {ambiguity.patient_id} is ambiguous: {ambiguity.reason}"
        )
        self.ambiguity = ambiguity

    @property
    def patient_id(self) -> int:
        return self.ambiguity.patient_id

    @property
    def reason(self) -> str:
        return self.ambiguity.reason
