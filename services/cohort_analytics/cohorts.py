"""Cohort set builder: exit categories and the active ART cohort."""

from __future__ import annotations

from collections import Counter
from datetime import date, datetime, timedelta
from typing import Callable, Iterable

from services.cohort_analytics.config import ConceptSettings
from services.cohort_analytics.gateway.interfaces import QueryGateway
from services.cohort_analytics.models import PatientSet
from services.cohort_analytics.period import DateRange, Period, parse_period
from services.cohort_analytics.scope import ReportScope
from shared.observability import get_logger

logger = get_logger(__name__)

DateLike = date | str

_GENDERS = frozenset({"M", "F"})


def _patients(ids: Iterable[int]) -> PatientSet:
    return frozenset(ids)


class CohortSetBuilder:
    """Computes named patient sets for one reporting period at a time.

    Every public operation takes calendar-date period boundaries (``date`` or
    ISO text) and returns a :data:`PatientSet`. Results are memoised on the
    shared :class:`ReportScope`, so repeated calls within a report hit the
    data store once.
    """

    def __init__(
        self,
        gateway: QueryGateway,
        concepts: ConceptSettings,
        *,
        scope: ReportScope | None = None,
    ) -> None:
        self._gateway = gateway
        self._concepts = concepts
        self.scope = scope or ReportScope()

    @property
    def concepts(self) -> ConceptSettings:
        return self._concepts

    def _cached(
        self,
        name: str,
        program_uuid: str | None,
        period: Period,
        compute: Callable[[], PatientSet],
    ) -> PatientSet:
        def run() -> PatientSet:
            patients = compute()
            logger.info(
                "cohort_set_computed",
                cohort=name,
                program=program_uuid,
                period=str(period),
                size=len(patients),
            )
            return patients

        return self.scope.cached((name, program_uuid, period), run)

    def _coded_outcome(self, name: str, period: Period, answers: Iterable[str]) -> PatientSet:
        answers = tuple(answers)

        def compute() -> PatientSet:
            observations = self._gateway.find_observations(
                period.window, value_coded=answers
            )
            return _patients(obs.person_id for obs in observations)

        return self._cached(name, None, period, compute)

    # ------------------------------------------------------------------
    # Enrollment and transfer sets
    # ------------------------------------------------------------------

    def enrolled_in_program(
        self, program_uuid: str, start: DateLike, end: DateLike
    ) -> PatientSet:
        """Patients with an enrollment in ``program_uuid`` dated in the period."""

        period = parse_period(start, end)

        def compute() -> PatientSet:
            enrollments = self._gateway.find_program_enrollments(
                program_uuid, period.window
            )
            return _patients(enrollment.patient_id for enrollment in enrollments)

        return self._cached("enrolled_in_program", program_uuid, period, compute)

    def transferred_in(self, start: DateLike, end: DateLike) -> PatientSet:
        return self._coded_outcome(
            "transferred_in", parse_period(start, end), self._concepts.transfer_in
        )

    def transferred_out(self, start: DateLike, end: DateLike) -> PatientSet:
        return self._coded_outcome(
            "transferred_out",
            parse_period(start, end),
            (self._concepts.transferred_out,),
        )

    def lost_to_follow_up(self, start: DateLike, end: DateLike) -> PatientSet:
        return self._coded_outcome(
            "lost_to_follow_up",
            parse_period(start, end),
            (self._concepts.lost_to_follow_up,),
        )

    # ------------------------------------------------------------------
    # Exit categories
    # ------------------------------------------------------------------

    def _stopped(self, name: str, program_uuid: str, period: Period) -> PatientSet:
        def compute() -> PatientSet:
            completed = self._gateway.find_program_enrollments_completed(
                program_uuid, period.window
            )
            if not completed:
                return frozenset()

            outcomes = self._gateway.find_observations(
                period.window, value_coded=self._concepts.outcomes
            )
            latest_outcome: dict[int, object] = {}
            for obs in outcomes:
                current = latest_outcome.get(obs.person_id)
                if current is None or obs.obs_datetime > current:
                    latest_outcome[obs.person_id] = obs.obs_datetime

            stopped: set[int] = set()
            for enrollment in completed:
                outcome_at = latest_outcome.get(enrollment.patient_id)
                # An outcome recorded before the completion already explains it.
                if outcome_at is not None and outcome_at < enrollment.date_completed:
                    continue
                stopped.add(enrollment.patient_id)
            return frozenset(stopped)

        return self._cached(name, program_uuid, period, compute)

    def art_stopped(
        self, start: DateLike, end: DateLike, *, program_uuid: str | None = None
    ) -> PatientSet:
        """Completed enrollments not accounted for by an earlier outcome."""

        program_uuid = program_uuid or self._concepts.art_program
        return self._stopped("art_stopped", program_uuid, parse_period(start, end))

    def hiv_stopped(self, start: DateLike, end: DateLike) -> PatientSet:
        return self._stopped(
            "hiv_stopped", self._concepts.hiv_program, parse_period(start, end)
        )

    def art_died(
        self, start: DateLike, end: DateLike, *, program_uuid: str | None = None
    ) -> PatientSet:
        """Deceased patients whose enrollment in the program is still open."""

        program_uuid = program_uuid or self._concepts.art_program
        period = parse_period(start, end)

        def compute() -> PatientSet:
            deceased = {
                patient.patient_id
                for patient in self._gateway.find_deceased_patients(period.window)
            }
            if not deceased:
                return frozenset()

            active = self._gateway.find_active_program_enrollments(
                program_uuid, sorted(deceased)
            )
            per_patient = Counter(enrollment.patient_id for enrollment in active)
            for patient_id, total in sorted(per_patient.items()):
                if total > 1:
                    self.scope.flag(
                        patient_id,
                        f"{total} concurrently active enrollments in program {program_uuid}",
                        cohort="art_died",
                    )
            return frozenset(per_patient)

        return self._cached("art_died", program_uuid, period, compute)

    def exited(
        self, start: DateLike, end: DateLike, *, program_uuid: str | None = None
    ) -> PatientSet:
        """Union of the five exit categories, computed once per report."""

        program_uuid = program_uuid or self._concepts.art_program
        period = parse_period(start, end)

        def compute() -> PatientSet:
            return (
                self.art_stopped(period.start, period.end, program_uuid=program_uuid)
                | self.art_died(period.start, period.end, program_uuid=program_uuid)
                | self.lost_to_follow_up(period.start, period.end)
                | self.transferred_out(period.start, period.end)
                | self.hiv_stopped(period.start, period.end)
            )

        return self._cached("exited", program_uuid, period, compute)

    # ------------------------------------------------------------------
    # Cohort totals
    # ------------------------------------------------------------------

    def total_cohort(self, start: DateLike, end: DateLike) -> PatientSet:
        """ART enrollees in the period, less those transferred out."""

        period = parse_period(start, end)
        art_program = self._concepts.art_program

        def compute() -> PatientSet:
            return self.enrolled_in_program(
                art_program, period.start, period.end
            ) - self.transferred_out(period.start, period.end)

        return self._cached("total_cohort", art_program, period, compute)

    def alive_and_on_art(
        self, start: DateLike, end: DateLike, *, program_uuid: str | None = None
    ) -> PatientSet:
        program_uuid = program_uuid or self._concepts.art_program
        period = parse_period(start, end)

        def compute() -> PatientSet:
            return self.total_cohort(period.start, period.end) - self.exited(
                period.start, period.end, program_uuid=program_uuid
            )

        return self._cached("alive_and_on_art", program_uuid, period, compute)

    def cohort_by_gender(
        self,
        gender: str,
        start: DateLike,
        end: DateLike,
        *,
        program_uuid: str | None = None,
    ) -> PatientSet:
        """Active cohort members of the given gender (``M`` or ``F``)."""

        normalised = (gender or "").strip().upper()
        if normalised not in _GENDERS:
            raise ValueError(f"Gender must be one of M or F, got {gender!r}.")
        period = parse_period(start, end)
        active = self.alive_and_on_art(
            period.start, period.end, program_uuid=program_uuid
        )
        return self.filter_by_gender(active, normalised)

    def cohort_by_age(
        self,
        min_age: int | None,
        max_age: int | None,
        start: DateLike,
        end: DateLike,
        *,
        program_uuid: str | None = None,
    ) -> PatientSet:
        """Active cohort members aged ``min_age``..``max_age`` (inclusive).

        Ages are completed years on the last day of the period; ``None``
        leaves that side of the range open.
        """

        if min_age is not None and max_age is not None and min_age > max_age:
            raise ValueError(f"Minimum age {min_age} exceeds maximum age {max_age}.")
        period = parse_period(start, end)
        active = self.alive_and_on_art(
            period.start, period.end, program_uuid=program_uuid
        )
        return self.filter_by_age(active, period.end, min_age, max_age)

    # ------------------------------------------------------------------
    # Follow-up cohorts
    # ------------------------------------------------------------------

    def _art_enrollments_open_after(
        self, name: str, period: Period, after: datetime
    ) -> PatientSet:
        """Last month's ART enrollees whose enrollment was still open at ``after``."""

        art_program = self._concepts.art_program
        previous = period.previous_month()

        def compute() -> PatientSet:
            return _patients(
                enrollment.patient_id
                for enrollment in self._gateway.find_program_enrollments(
                    art_program, previous.window
                )
                if enrollment.date_completed is None or enrollment.date_completed > after
            )

        return self._cached(name, art_program, period, compute)

    def active_follow_up_at_start(self, start: DateLike, end: DateLike) -> PatientSet:
        """Enrollees of the month before who were still in care when the period opened."""

        period = parse_period(start, end)
        return self._art_enrollments_open_after(
            "active_follow_up_at_start", period, period.window.start
        )

    def carried_forward(self, start: DateLike, end: DateLike) -> PatientSet:
        """Enrollees of the month before who were still in care when the period closed."""

        period = parse_period(start, end)
        return self._art_enrollments_open_after(
            "carried_forward", period, period.window.end
        )

    def active_follow_up_at_end(self, start: DateLike, end: DateLike) -> PatientSet:
        """New ART enrollees of the period plus the carried-forward enrollees."""

        period = parse_period(start, end)
        return self.enrolled_in_program(
            self._concepts.art_program, period.start, period.end
        ) | self.carried_forward(period.start, period.end)

    def waiting_for_art(self, start: DateLike, end: DateLike) -> PatientSet:
        """Living patients with an HIV intake but no ART encounter in the period."""

        period = parse_period(start, end)
        concepts = self._concepts

        def compute() -> PatientSet:
            intake = {
                encounter.patient_id
                for encounter in self._gateway.find_encounters(
                    period.window, encounter_types=(concepts.hiv_enrollment_encounter,)
                )
            }
            if not intake:
                return frozenset()
            on_art = {
                encounter.patient_id
                for encounter in self._gateway.find_encounters(
                    period.window,
                    encounter_types=(concepts.art_encounter,),
                    patient_ids=sorted(intake),
                )
            }
            waiting = intake - on_art
            return _patients(
                patient.patient_id
                for patient in self._gateway.find_patients(sorted(waiting))
                if not patient.dead
            )

        return self._cached("waiting_for_art", None, period, compute)

    def died_in_care(self, start: DateLike, end: DateLike) -> PatientSet:
        """Patients who died in the period after at least one ART encounter."""

        period = parse_period(start, end)

        def compute() -> PatientSet:
            deceased = sorted(
                {
                    patient.patient_id
                    for patient in self._gateway.find_deceased_patients(period.window)
                }
            )
            if not deceased:
                return frozenset()
            return _patients(
                encounter.patient_id
                for encounter in self._gateway.find_encounters(
                    DateRange.through(period.window.end),
                    encounter_types=(self._concepts.art_encounter,),
                    patient_ids=deceased,
                )
            )

        return self._cached("died_in_care", None, period, compute)

    def program_completed(
        self, program_uuid: str, start: DateLike, end: DateLike
    ) -> PatientSet:
        """Every completion in ``program_uuid`` during the period, whatever the reason."""

        period = parse_period(start, end)

        def compute() -> PatientSet:
            return _patients(
                enrollment.patient_id
                for enrollment in self._gateway.find_program_enrollments_completed(
                    program_uuid, period.window
                )
            )

        return self._cached("program_completed", program_uuid, period, compute)

    def completed_before(
        self, program_uuid: str, start: DateLike, end: DateLike
    ) -> PatientSet:
        """Patients whose enrollment in ``program_uuid`` ended before the period."""

        period = parse_period(start, end)

        def compute() -> PatientSet:
            before = DateRange.through(period.window.start - timedelta(microseconds=1))
            return _patients(
                enrollment.patient_id
                for enrollment in self._gateway.find_program_enrollments_completed(
                    program_uuid, before
                )
            )

        return self._cached("completed_before", program_uuid, period, compute)

    # ------------------------------------------------------------------
    # Demographic filters
    # ------------------------------------------------------------------

    def filter_by_gender(self, patients: PatientSet, gender: str) -> PatientSet:
        if not patients:
            return frozenset()
        return frozenset(
            patient.patient_id
            for patient in self._gateway.find_patients(sorted(patients))
            if (patient.gender or "").upper() == gender
        )

    def filter_by_age(
        self,
        patients: PatientSet,
        on: date,
        min_age: int | None,
        max_age: int | None,
    ) -> PatientSet:
        if not patients:
            return frozenset()
        matched: set[int] = set()
        for patient in self._gateway.find_patients(sorted(patients)):
            age = patient.age_on(on)
            if age is None:
                continue
            if min_age is not None and age < min_age:
                continue
            if max_age is not None and age > max_age:
                continue
            matched.add(patient.patient_id)
        return frozenset(matched)


__all__ = ["CohortSetBuilder", "DateLike"]
