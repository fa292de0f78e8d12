"""Service facade wiring the gateway, builder, classifier and picker."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator

from services.cohort_analytics.adherence import Clock, VisitStreakPicker
from services.cohort_analytics.cohorts import CohortSetBuilder
from services.cohort_analytics.config import Settings, get_settings
from services.cohort_analytics.errors import ClassificationAmbiguity
from services.cohort_analytics.gateway.interfaces import QueryGateway
from services.cohort_analytics.gateway.sql import SqlAlchemyGateway
from services.cohort_analytics.metrics import MetricCatalogue
from services.cohort_analytics.processing import RegimenLedger
from services.cohort_analytics.regimens import RegimenLineageClassifier
from services.cohort_analytics.scope import ReportScope
from shared.observability import get_logger, report_context

logger = get_logger(__name__)


@dataclass(slots=True)
class CohortReport:
    """Components sharing one memo and ambiguity list for a single report."""

    report_id: str
    scope: ReportScope
    cohorts: CohortSetBuilder
    classifier: RegimenLineageClassifier
    picker: VisitStreakPicker
    catalogue: MetricCatalogue

    @property
    def ambiguities(self) -> list[ClassificationAmbiguity]:
        return list(self.scope.ambiguities)


class CohortAnalyticsService:
    """Entry point for cohort computations against one data store."""

    def __init__(
        self,
        gateway: QueryGateway,
        settings: Settings | None = None,
        *,
        clock: Clock = datetime.now,
    ) -> None:
        self._gateway = gateway
        self._settings = settings or get_settings()
        self._clock = clock
        self.ledger = RegimenLedger(gateway)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CohortAnalyticsService":
        """Build a service backed by the configured SQL database."""

        settings = settings or get_settings()
        gateway = SqlAlchemyGateway(settings.database.url, echo=settings.database.echo)
        return cls(gateway, settings)

    @property
    def gateway(self) -> QueryGateway:
        return self._gateway

    @property
    def settings(self) -> Settings:
        return self._settings

    def new_report(self, report_id: str) -> CohortReport:
        scope = ReportScope(policy=self._settings.classifier.ambiguity_policy)
        cohorts = CohortSetBuilder(self._gateway, self._settings.concepts, scope=scope)
        classifier = RegimenLineageClassifier(
            self._gateway, cohorts, self._settings.classifier
        )
        picker = VisitStreakPicker(
            self._gateway, self._settings.concepts, scope=scope, clock=self._clock
        )
        catalogue = MetricCatalogue(self._gateway, cohorts, classifier, picker)
        return CohortReport(
            report_id=report_id,
            scope=scope,
            cohorts=cohorts,
            classifier=classifier,
            picker=picker,
            catalogue=catalogue,
        )

    @contextmanager
    def report(self, report_id: str | None = None, **context: object) -> Iterator[CohortReport]:
        """Yield a fresh :class:`CohortReport` with logging bound to its id.

        Derived sets are memoised for the lifetime of the block only.
        """

        with report_context(report_id, **context) as rid:
            report = self.new_report(rid)
            logger.info("cohort_report_started", policy=report.scope.policy)
            try:
                yield report
            finally:
                logger.info(
                    "cohort_report_finished",
                    cached_sets=len(report.scope.memo),
                    ambiguities=len(report.scope.ambiguities),
                )


__all__ = ["CohortAnalyticsService", "CohortReport"]
