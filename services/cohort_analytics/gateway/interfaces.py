"""Protocol definitions for clinical data store gateways."""

from __future__ import annotations

from typing import Collection, Protocol, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - import for type checking only
    from services.cohort_analytics.models import (
        DrugObsProcessed,
        DrugOrderProcessed,
        Encounter,
        Observation,
        Patient,
        ProgramEnrollment,
        RegimenChangeType,
        RegimenType,
        Visit,
    )
    from services.cohort_analytics.period import DateRange


class QueryGateway(Protocol):
    """Read-mostly access to the clinical data store.

    Ranges are closed intervals and voided rows are never returned unless a
    method says otherwise. Implementations raise
    :class:`~services.cohort_analytics.errors.DataAccessError` on any failure
    to reach or read the store.
    """

    def find_program_enrollments(
        self, program_uuid: str, enrolled: "DateRange"
    ) -> list["ProgramEnrollment"]:
        """Enrollments in ``program_uuid`` with ``date_enrolled`` in range."""

    def find_program_enrollments_completed(
        self, program_uuid: str, completed: "DateRange"
    ) -> list["ProgramEnrollment"]:
        """Enrollments in ``program_uuid`` with ``date_completed`` in range."""

    def find_active_program_enrollments(
        self, program_uuid: str, patient_ids: Collection[int]
    ) -> list["ProgramEnrollment"]:
        """Enrollments in ``program_uuid`` without a completion date."""

    def find_observations(
        self,
        window: "DateRange",
        *,
        value_coded: Collection[str] | None = None,
        concepts: Collection[str] | None = None,
        person_id: int | None = None,
        include_voided: bool = False,
    ) -> list["Observation"]:
        """Observations dated in ``window`` matching the given concept filters."""

    def find_deceased_patients(self, window: "DateRange") -> list["Patient"]:
        """Patients flagged dead with a death date in ``window``."""

    def find_patients(self, patient_ids: Collection[int]) -> list["Patient"]:
        """Demographics for ``patient_ids``; unknown identifiers are skipped."""

    def find_visits_started(self, window: "DateRange") -> list["Visit"]:
        """Visits whose start falls in ``window``."""

    def find_visits_by_patient(self, patient_id: int) -> list["Visit"]:
        """All visits of ``patient_id`` ordered by start ascending."""

    def find_encounters(
        self,
        window: "DateRange",
        *,
        encounter_types: Collection[str] | None = None,
        patient_ids: Collection[int] | None = None,
    ) -> list["Encounter"]:
        """Encounters in ``window``, optionally of the named types or patients."""

    def find_drug_orders_processed(
        self,
        window: "DateRange",
        *,
        change_types: Collection["RegimenChangeType"] | None = None,
        regimen_types: Collection["RegimenType"] | None = None,
        drug_regimen: str | None = None,
        dose_regimen: str | None = None,
        active_only: bool = False,
        processed_only: bool = False,
    ) -> list["DrugOrderProcessed"]:
        """Processed drug orders whose ``start_date`` falls in ``window``.

        ``processed_only`` keeps records whose dispensing has been confirmed.
        """

    def find_drug_orders_processed_by_visit(
        self, visit_id: int
    ) -> list["DrugOrderProcessed"]:
        """Processed drug orders recorded against ``visit_id``."""

    def find_drug_order_processed_by_patient(
        self, patient_id: int
    ) -> list["DrugOrderProcessed"]:
        """Every processed drug order of ``patient_id``."""

    def find_last_drug_order_processed_by_patient(
        self, patient_id: int
    ) -> "DrugOrderProcessed | None":
        """Most recent processed drug order of ``patient_id`` by ``created_date``."""

    def find_last_active_drug_order_processed_by_patient(
        self, patient_id: int
    ) -> "DrugOrderProcessed | None":
        """Most recent processed drug order without a discontinued date."""

    def save_drug_order_processed(
        self, record: "DrugOrderProcessed"
    ) -> "DrugOrderProcessed":
        """Insert or update ``record`` and return the stored version."""

    def save_regimen_change(
        self, record: "DrugOrderProcessed"
    ) -> tuple["DrugOrderProcessed", "DrugOrderProcessed | None"]:
        """Make ``record`` the patient's current regimen in one transaction.

        The patient's current record, unless it is ``record`` itself, gets
        ``record.start_date`` as its discontinued date. Returns the stored
        record and the superseded one, if any. On failure neither is written.
        """

    def save_drug_obs_processed(self, record: "DrugObsProcessed") -> "DrugObsProcessed":
        """Insert or update ``record`` and return the stored version."""


__all__ = ["QueryGateway"]
