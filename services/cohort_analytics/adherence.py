"""ARV pick-up streaks over consecutive visits."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Sequence

from services.cohort_analytics.cohorts import DateLike
from services.cohort_analytics.config import ConceptSettings
from services.cohort_analytics.gateway.interfaces import QueryGateway
from services.cohort_analytics.models import PatientSet, Visit
from services.cohort_analytics.period import DateRange, Period, parse_period
from services.cohort_analytics.scope import ReportScope
from shared.observability import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]

SUPPORTED_STREAKS = (6, 12)


def qualifying_visits(visits: Sequence[Visit], window: DateRange, limit: int) -> list[Visit]:
    """Return up to ``limit`` visits, in order, that count towards a streak.

    A closed visit counts when it stopped before the end of ``window``; an
    open visit counts when it started inside ``window`` but before its end.
    """

    selected: list[Visit] = []
    for visit in visits:
        if len(selected) == limit:
            break
        if visit.stop_datetime is not None:
            if visit.stop_datetime < window.end:
                selected.append(visit)
        elif window.start <= visit.start_datetime < window.end:
            selected.append(visit)
    return selected


class VisitStreakPicker:
    """Finds patients who picked up ARVs over ``N`` consecutive visits.

    ``clock`` supplies the time of day used to close a still-open boundary
    visit; tests pass a fixed clock.
    """

    def __init__(
        self,
        gateway: QueryGateway,
        concepts: ConceptSettings,
        *,
        scope: ReportScope | None = None,
        clock: Clock = datetime.now,
    ) -> None:
        self._gateway = gateway
        self._concepts = concepts
        self.scope = scope or ReportScope()
        self._clock = clock

    def picked_up_arv(self, start: DateLike, end: DateLike, *, months: int) -> PatientSet:
        if months not in SUPPORTED_STREAKS:
            raise ValueError(
                f"Pick-up streaks are defined for {SUPPORTED_STREAKS} months, got {months}."
            )
        period = parse_period(start, end)

        def compute() -> PatientSet:
            patients = self._pick(period, months)
            logger.info(
                "pickup_streak_computed",
                months=months,
                period=str(period),
                size=len(patients),
            )
            return patients

        return self.scope.cached(("picked_up_arv", months, period), compute)

    def picked_up_arv_six_months(self, start: DateLike, end: DateLike) -> PatientSet:
        return self.picked_up_arv(start, end, months=6)

    def picked_up_arv_twelve_months(self, start: DateLike, end: DateLike) -> PatientSet:
        return self.picked_up_arv(start, end, months=12)

    def _pick(self, period: Period, streak: int) -> PatientSet:
        window = period.window
        candidates = sorted(
            {visit.patient_id for visit in self._gateway.find_visits_started(window)}
        )
        picked: set[int] = set()
        for patient_id in candidates:
            if self._qualifies(patient_id, window, streak):
                picked.add(patient_id)
        return frozenset(picked)

    def _qualifies(self, patient_id: int, window: DateRange, streak: int) -> bool:
        visits = self._gateway.find_visits_by_patient(patient_id)
        if len(visits) < streak:
            return False

        selected = qualifying_visits(visits, window, streak + 1)
        if len(selected) < streak:
            return False

        boundary = selected[0]
        nth = selected[streak - 1]
        if boundary.stop_datetime is not None:
            closed_at = boundary.stop_datetime
        else:
            closed_at = datetime.combine(
                boundary.start_datetime.date(), self._clock().time()
            )
        opened_at = nth.start_datetime
        streak_window = DateRange(min(opened_at, closed_at), max(opened_at, closed_at))

        if len(selected) > streak:
            extra = selected[streak]
            extra_window = DateRange(
                extra.start_datetime, extra.stop_datetime or window.end
            )
            if not self._lost_to_follow_up(patient_id, extra_window) and self._dispensed(
                extra
            ):
                logger.debug(
                    "pickup_streak_extra_visit",
                    patient_id=patient_id,
                    visit_id=extra.visit_id,
                )
                return False

        return not self._lost_to_follow_up(patient_id, streak_window) and self._dispensed(nth)

    def _lost_to_follow_up(self, patient_id: int, window: DateRange) -> bool:
        return bool(
            self._gateway.find_observations(
                window,
                value_coded=(self._concepts.lost_to_follow_up,),
                person_id=patient_id,
            )
        )

    def _dispensed(self, visit: Visit) -> bool:
        return bool(self._gateway.find_drug_orders_processed_by_visit(visit.visit_id))


__all__ = ["Clock", "SUPPORTED_STREAKS", "VisitStreakPicker", "qualifying_visits"]
