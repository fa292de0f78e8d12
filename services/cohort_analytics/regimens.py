"""Regimen lineage classifier.

Patients are placed into regimen tiers from their processed drug-order
history. A tier drops patients whose *current* regimen state, the most recent
processed record by ``created_date`` across the whole history, shows they
have moved on. The look-ahead is deliberately not scoped to the reporting
period: a switch recorded after the period still removes a patient from an
in-period first-line cohort.
"""

from __future__ import annotations

from typing import Callable, Collection, Hashable, Iterable

from services.cohort_analytics.cohorts import CohortSetBuilder, DateLike
from services.cohort_analytics.config import ClassifierSettings
from services.cohort_analytics.gateway.interfaces import QueryGateway
from services.cohort_analytics.models import (
    DrugOrderProcessed,
    PatientSet,
    RegimenChangeType,
    RegimenType,
)
from services.cohort_analytics.period import DateRange, Period, parse_period
from shared.observability import get_logger

logger = get_logger(__name__)

FIRST_LINE_START_TYPES = (
    RegimenType.FIRST_LINE,
    RegimenType.FDC,
    RegimenType.CHILD_ARV,
)
FIRST_LINE_SUBSTITUTE_TYPES = (RegimenType.FIRST_LINE, RegimenType.FDC)
SECOND_LINE_TYPES = (RegimenType.SECOND_LINE, RegimenType.FDC)

_MISSING_STATE = "no processed drug order found for current-state look-ahead"


class RegimenLineageClassifier:
    """Computes the regimen tiers for a program and period."""

    def __init__(
        self,
        gateway: QueryGateway,
        cohorts: CohortSetBuilder,
        settings: ClassifierSettings,
    ) -> None:
        self._gateway = gateway
        self._cohorts = cohorts
        self._settings = settings
        self.scope = cohorts.scope

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _program(self, program_uuid: str | None) -> str:
        return program_uuid or self._cohorts.concepts.art_program

    def _exited(self, period: Period, program_uuid: str) -> PatientSet:
        return self._cohorts.exited(period.start, period.end, program_uuid=program_uuid)

    def _records(
        self,
        period: Period,
        *,
        change_types: Collection[RegimenChangeType] | None,
        regimen_types: Collection[RegimenType],
        drug_regimen: str | None = None,
    ) -> list[DrugOrderProcessed]:
        return self._gateway.find_drug_orders_processed(
            period.window,
            change_types=change_types,
            regimen_types=regimen_types,
            drug_regimen=drug_regimen,
        )

    def current_state(self, patient_id: int) -> DrugOrderProcessed | None:
        """Most recent processed drug order of ``patient_id``, memoised per report."""

        return self.scope.cached(
            ("current_state", patient_id),
            lambda: self._gateway.find_last_drug_order_processed_by_patient(patient_id),
        )

    def _without_current(
        self,
        patients: Iterable[int],
        excluded: Collection[RegimenChangeType],
        cohort: str,
    ) -> PatientSet:
        """Drop patients whose current state is one of ``excluded``.

        A patient with no current state at all is ambiguous and is skipped.
        """

        kept: set[int] = set()
        for patient_id in sorted(set(patients)):
            state = self.current_state(patient_id)
            if state is None:
                self.scope.flag(patient_id, _MISSING_STATE, cohort=cohort)
                continue
            if state.regimen_change_type in excluded:
                continue
            kept.add(patient_id)
        return frozenset(kept)

    def _tier(
        self,
        name: str,
        program_uuid: str,
        period: Period,
        compute: Callable[[], PatientSet],
        *qualifiers: Hashable,
    ) -> PatientSet:
        def run() -> PatientSet:
            patients = compute()
            logger.info(
                "regimen_tier_computed",
                tier=name,
                program=program_uuid,
                period=str(period),
                size=len(patients),
            )
            return patients

        return self.scope.cached((name, program_uuid, period, *qualifiers), run)

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    def original_first_line(
        self, start: DateLike, end: DateLike, *, program_uuid: str | None = None
    ) -> PatientSet:
        """Patients still on the first-line regimen they started in the period."""

        program_uuid = self._program(program_uuid)
        period = parse_period(start, end)

        def compute() -> PatientSet:
            earliest: dict[int, DrugOrderProcessed] = {}
            for record in self._records(
                period, change_types=None, regimen_types=FIRST_LINE_START_TYPES
            ):
                current = earliest.get(record.patient_id)
                if current is None or (record.start_date, record.created_date) < (
                    current.start_date,
                    current.created_date,
                ):
                    earliest[record.patient_id] = record
            started = {
                patient_id
                for patient_id, record in earliest.items()
                if record.regimen_change_type == RegimenChangeType.START
            }
            moved_on = self.alternate_first_line(
                period.start, period.end, program_uuid=program_uuid
            ) | self.second_line(period.start, period.end, program_uuid=program_uuid)
            candidates = started - moved_on
            still_original = self._without_current(
                candidates,
                (RegimenChangeType.SUBSTITUTE, RegimenChangeType.SWITCH),
                "original_first_line",
            )
            return still_original - self._exited(period, program_uuid)

        return self._tier("original_first_line", program_uuid, period, compute)

    def alternate_first_line(
        self, start: DateLike, end: DateLike, *, program_uuid: str | None = None
    ) -> PatientSet:
        """Patients on a substituted first-line regimen."""

        program_uuid = self._program(program_uuid)
        period = parse_period(start, end)

        def compute() -> PatientSet:
            substituted = {
                record.patient_id
                for record in self._records(
                    period,
                    change_types=(RegimenChangeType.SUBSTITUTE,),
                    regimen_types=FIRST_LINE_SUBSTITUTE_TYPES,
                )
            }
            not_switched = self._without_current(
                substituted, (RegimenChangeType.SWITCH,), "alternate_first_line"
            )
            second = self.second_line(period.start, period.end, program_uuid=program_uuid)
            return not_switched - second - self._exited(period, program_uuid)

        return self._tier("alternate_first_line", program_uuid, period, compute)

    def second_line(
        self, start: DateLike, end: DateLike, *, program_uuid: str | None = None
    ) -> PatientSet:
        """Patients switched to a second-line regimen."""

        program_uuid = self._program(program_uuid)
        period = parse_period(start, end)

        def compute() -> PatientSet:
            switched = {
                record.patient_id
                for record in self._records(
                    period,
                    change_types=(RegimenChangeType.SWITCH,),
                    regimen_types=SECOND_LINE_TYPES,
                )
            }
            # A later substitution reads as not yet switched.
            not_reverted = self._without_current(
                switched, (RegimenChangeType.SUBSTITUTE,), "second_line"
            )
            return not_reverted - self._exited(period, program_uuid)

        return self._tier("second_line", program_uuid, period, compute)

    def third_line(
        self, start: DateLike, end: DateLike, *, program_uuid: str | None = None
    ) -> PatientSet:
        """Patients switched to the configured third-line combination."""

        program_uuid = self._program(program_uuid)
        period = parse_period(start, end)

        def compute() -> PatientSet:
            switched = {
                record.patient_id
                for record in self._records(
                    period,
                    change_types=(RegimenChangeType.SWITCH,),
                    regimen_types=(RegimenType.FDC,),
                    drug_regimen=self._settings.third_line_drug_regimen,
                )
            }
            return frozenset(switched) - self._exited(period, program_uuid)

        return self._tier("third_line", program_uuid, period, compute)

    def regimen_holders(
        self,
        start: DateLike,
        end: DateLike,
        *,
        regimen_types: Collection[RegimenType],
        drug_regimen: str,
        dose_regimen: str | None = None,
        program_uuid: str | None = None,
    ) -> PatientSet:
        """ART enrollees of the period holding an exact drug/dose regimen.

        Only records that have not been discontinued count. ``dose_regimen``
        of ``None`` matches any dose.
        """

        program_uuid = self._program(program_uuid)
        period = parse_period(start, end)
        types = tuple(regimen_types)
        def compute() -> PatientSet:
            enrolled = self._cohorts.enrolled_in_program(
                self._cohorts.concepts.art_program, period.start, period.end
            )
            if not enrolled:
                return frozenset()
            held = self._gateway.find_drug_orders_processed(
                DateRange.through(period.window.end),
                regimen_types=types,
                drug_regimen=drug_regimen,
                dose_regimen=dose_regimen,
                active_only=True,
            )
            holders = enrolled & {record.patient_id for record in held}
            return holders - self._exited(period, program_uuid)

        return self._tier(
            "regimen_holders",
            program_uuid,
            period,
            compute,
            types,
            drug_regimen,
            dose_regimen,
        )


__all__ = [
    "FIRST_LINE_START_TYPES",
    "FIRST_LINE_SUBSTITUTE_TYPES",
    "RegimenLineageClassifier",
    "SECOND_LINE_TYPES",
]
