"""Per-report memoisation and ambiguity bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Literal, TypeVar

from services.cohort_analytics.errors import (
    ClassificationAmbiguity,
    ClassificationAmbiguityError,
)
from shared.observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

AmbiguityPolicy = Literal["flag", "raise"]


@dataclass(slots=True)
class ReportScope:
    """State shared by every component computing one report.

    ``memo`` holds derived sets keyed by ``(name, program, period)`` so that
    the exit union and the regimen tiers are computed once per report.
    ``ambiguities`` collects patients skipped under the ``flag`` policy.
    """

    policy: AmbiguityPolicy = "flag"
    memo: dict[Hashable, Any] = field(default_factory=dict)
    ambiguities: list[ClassificationAmbiguity] = field(default_factory=list)

    def cached(self, key: Hashable, compute: Callable[[], T]) -> T:
        if key in self.memo:
            return self.memo[key]
        value = compute()
        self.memo[key] = value
        return value

    def flag(self, patient_id: int, reason: str, *, cohort: str | None = None) -> None:
        """Record an ambiguous patient, or raise under the ``raise`` policy."""

        ambiguity = ClassificationAmbiguity(patient_id=patient_id, reason=reason, cohort=cohort)
        if self.policy == "raise":
            raise ClassificationAmbiguityError(ambiguity)
        logger.warning(
            "classification_ambiguity",
            patient_id=patient_id,
            reason=reason,
            cohort=cohort,
        )
        if ambiguity not in self.ambiguities:
            self.ambiguities.append(ambiguity)

    def clear(self) -> None:
        self.memo.clear()
        self.ambiguities.clear()


__all__ = ["AmbiguityPolicy", "ReportScope"]
