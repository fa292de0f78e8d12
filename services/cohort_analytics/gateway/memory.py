"""List-backed gateway used for fixtures, dry runs and tests."""

from __future__ import annotations

import json
from itertools import count
from pathlib import Path
from typing import Any, Collection, Iterable, Mapping

from pydantic import ValidationError

from services.cohort_analytics.errors import DataAccessError
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


class FixtureLoadError(DataAccessError):
    """Raised when a fixture document cannot be turned into store rows."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(
            "Failed to load cohort fixtures:\n" + "\n".join(errors),
            operation="load_fixture",
        )
        self.errors = errors


# Fixture section name -> (constructor keyword, row model)
_SECTIONS: dict[str, tuple[str, type]] = {
    "patients": ("patients", Patient),
    "enrollments": ("enrollments", ProgramEnrollment),
    "observations": ("observations", Observation),
    "visits": ("visits", Visit),
    "encounters": ("encounters", Encounter),
    "drug_orders_processed": ("drug_orders", DrugOrderProcessed),
    "drug_obs_processed": ("drug_obs", DrugObsProcessed),
}


def _last_by_created(records: Iterable[DrugOrderProcessed]) -> DrugOrderProcessed | None:
    ordered = sorted(records, key=lambda r: (r.created_date, r.id or 0), reverse=True)
    return ordered[0].model_copy() if ordered else None


class InMemoryGateway:
    """Query gateway over plain Python lists."""

    def __init__(
        self,
        *,
        patients: Iterable[Patient] = (),
        enrollments: Iterable[ProgramEnrollment] = (),
        observations: Iterable[Observation] = (),
        visits: Iterable[Visit] = (),
        encounters: Iterable[Encounter] = (),
        drug_orders: Iterable[DrugOrderProcessed] = (),
        drug_obs: Iterable[DrugObsProcessed] = (),
    ) -> None:
        self._patients: list[Patient] = list(patients)
        self._enrollments: list[ProgramEnrollment] = list(enrollments)
        self._observations: list[Observation] = list(observations)
        self._visits: list[Visit] = list(visits)
        self._encounters: list[Encounter] = list(encounters)
        self._drug_orders: list[DrugOrderProcessed] = [
            record.model_copy() for record in drug_orders
        ]
        self._drug_obs: list[DrugObsProcessed] = [
            record.model_copy() for record in drug_obs
        ]
        start = max((record.id or 0 for record in self._drug_orders), default=0) + 1
        self._order_ids = count(start)
        start = max((record.id or 0 for record in self._drug_obs), default=0) + 1
        self._obs_ids = count(start)

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "InMemoryGateway":
        """Build a gateway from a mapping of section names to row objects.

        Every row is validated; all problems are collected and reported
        together in a single :class:`FixtureLoadError`.
        """

        errors: list[str] = []
        sections: dict[str, list[Any]] = {}
        for key, (keyword, model) in _SECTIONS.items():
            rows = document.get(key) or []
            if not isinstance(rows, list):
                errors.append(f"{key}: expected a list of objects")
                continue
            parsed: list[Any] = []
            for index, row in enumerate(rows):
                try:
                    parsed.append(model.model_validate(row))
                except ValidationError as exc:
                    first = exc.errors()[0]
                    location = ".".join(str(part) for part in first["loc"])
                    errors.append(f"{key}[{index}].{location}: {first['msg']}")
            sections[keyword] = parsed

        if errors:
            raise FixtureLoadError(errors)

        return cls(**sections)

    @classmethod
    def from_path(cls, path: str | Path) -> "InMemoryGateway":
        """Load a JSON fixture document from ``path``."""

        fixture = Path(path)
        try:
            payload = json.loads(fixture.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise FixtureLoadError([f"{fixture}: {exc.strerror or 'file not found'}"]) from exc
        except json.JSONDecodeError as exc:
            raise FixtureLoadError([f"{fixture}: invalid JSON ({exc.msg})"]) from exc

        if not isinstance(payload, Mapping):
            raise FixtureLoadError([f"{fixture}: top-level JSON payload must be an object"])
        return cls.from_document(payload)

    # ------------------------------------------------------------------
    # Program enrollments
    # ------------------------------------------------------------------

    def _enrollments_in(self, program_uuid: str) -> list[ProgramEnrollment]:
        return [
            enrollment
            for enrollment in self._enrollments
            if enrollment.program_uuid == program_uuid and not enrollment.voided
        ]

    def find_program_enrollments(
        self, program_uuid: str, enrolled: DateRange
    ) -> list[ProgramEnrollment]:
        return [
            enrollment
            for enrollment in self._enrollments_in(program_uuid)
            if enrollment.date_enrolled in enrolled
        ]

    def find_program_enrollments_completed(
        self, program_uuid: str, completed: DateRange
    ) -> list[ProgramEnrollment]:
        return [
            enrollment
            for enrollment in self._enrollments_in(program_uuid)
            if enrollment.date_completed in completed
        ]

    def find_active_program_enrollments(
        self, program_uuid: str, patient_ids: Collection[int]
    ) -> list[ProgramEnrollment]:
        wanted = set(patient_ids)
        return [
            enrollment
            for enrollment in self._enrollments_in(program_uuid)
            if enrollment.is_active and enrollment.patient_id in wanted
        ]

    # ------------------------------------------------------------------
    # Observations and people
    # ------------------------------------------------------------------

    def find_observations(
        self,
        window: DateRange,
        *,
        value_coded: Collection[str] | None = None,
        concepts: Collection[str] | None = None,
        person_id: int | None = None,
        include_voided: bool = False,
    ) -> list[Observation]:
        answers = set(value_coded) if value_coded is not None else None
        questions = set(concepts) if concepts is not None else None
        results: list[Observation] = []
        for obs in self._observations:
            if obs.voided and not include_voided:
                continue
            if obs.obs_datetime not in window:
                continue
            if answers is not None and obs.value_coded not in answers:
                continue
            if questions is not None and obs.concept not in questions:
                continue
            if person_id is not None and obs.person_id != person_id:
                continue
            results.append(obs)
        return results

    def find_deceased_patients(self, window: DateRange) -> list[Patient]:
        return [
            patient
            for patient in self._patients
            if patient.dead and patient.death_date in window
        ]

    def find_patients(self, patient_ids: Collection[int]) -> list[Patient]:
        wanted = set(patient_ids)
        return [patient for patient in self._patients if patient.patient_id in wanted]

    # ------------------------------------------------------------------
    # Visits
    # ------------------------------------------------------------------

    def find_visits_started(self, window: DateRange) -> list[Visit]:
        return [
            visit
            for visit in self._visits
            if not visit.voided and visit.start_datetime in window
        ]

    def find_visits_by_patient(self, patient_id: int) -> list[Visit]:
        visits = [
            visit
            for visit in self._visits
            if visit.patient_id == patient_id and not visit.voided
        ]
        return sorted(visits, key=lambda visit: (visit.start_datetime, visit.visit_id))

    # ------------------------------------------------------------------
    # Encounters
    # ------------------------------------------------------------------

    def find_encounters(
        self,
        window: DateRange,
        *,
        encounter_types: Collection[str] | None = None,
        patient_ids: Collection[int] | None = None,
    ) -> list[Encounter]:
        types = set(encounter_types) if encounter_types is not None else None
        wanted = set(patient_ids) if patient_ids is not None else None
        matched = [
            encounter
            for encounter in self._encounters
            if not encounter.voided
            and encounter.encounter_datetime in window
            and (types is None or encounter.encounter_type in types)
            and (wanted is None or encounter.patient_id in wanted)
        ]
        return sorted(
            matched, key=lambda encounter: (encounter.encounter_datetime, encounter.encounter_id)
        )

    # ------------------------------------------------------------------
    # Processed drug orders
    # ------------------------------------------------------------------

    def find_drug_orders_processed(
        self,
        window: DateRange,
        *,
        change_types: Collection[RegimenChangeType] | None = None,
        regimen_types: Collection[RegimenType] | None = None,
        drug_regimen: str | None = None,
        dose_regimen: str | None = None,
        active_only: bool = False,
        processed_only: bool = False,
    ) -> list[DrugOrderProcessed]:
        changes = set(change_types) if change_types is not None else None
        regimens = set(regimen_types) if regimen_types is not None else None
        results: list[DrugOrderProcessed] = []
        for record in self._drug_orders:
            if record.start_date not in window:
                continue
            if changes is not None and record.regimen_change_type not in changes:
                continue
            if regimens is not None and record.type_of_regimen not in regimens:
                continue
            if drug_regimen is not None and record.drug_regimen != drug_regimen:
                continue
            if dose_regimen is not None and record.dose_regimen != dose_regimen:
                continue
            if active_only and record.discontinued_date is not None:
                continue
            if processed_only and not record.processed_status:
                continue
            results.append(record.model_copy())
        return results

    def find_drug_orders_processed_by_visit(self, visit_id: int) -> list[DrugOrderProcessed]:
        return [
            record.model_copy()
            for record in self._drug_orders
            if record.visit_id == visit_id
        ]

    def find_drug_order_processed_by_patient(
        self, patient_id: int
    ) -> list[DrugOrderProcessed]:
        return [
            record.model_copy()
            for record in self._drug_orders
            if record.patient_id == patient_id
        ]

    def find_last_drug_order_processed_by_patient(
        self, patient_id: int
    ) -> DrugOrderProcessed | None:
        return _last_by_created(
            record for record in self._drug_orders if record.patient_id == patient_id
        )

    def find_last_active_drug_order_processed_by_patient(
        self, patient_id: int
    ) -> DrugOrderProcessed | None:
        return _last_by_created(
            record
            for record in self._drug_orders
            if record.patient_id == patient_id and record.discontinued_date is None
        )

    # ------------------------------------------------------------------
    # Write-back
    # ------------------------------------------------------------------

    def save_drug_order_processed(self, record: DrugOrderProcessed) -> DrugOrderProcessed:
        stored = record.model_copy()
        if stored.id is None:
            stored.id = next(self._order_ids)
            self._drug_orders.append(stored)
        else:
            for index, existing in enumerate(self._drug_orders):
                if existing.id == stored.id:
                    self._drug_orders[index] = stored
                    break
            else:
                self._drug_orders.append(stored)
        return stored.model_copy()

    def save_regimen_change(
        self, record: DrugOrderProcessed
    ) -> tuple[DrugOrderProcessed, DrugOrderProcessed | None]:
        current = self.find_last_active_drug_order_processed_by_patient(record.patient_id)
        superseded = None
        if current is not None and current.id != record.id:
            current.discontinued_date = record.start_date
            superseded = self.save_drug_order_processed(current)
        return self.save_drug_order_processed(record), superseded

    def save_drug_obs_processed(self, record: DrugObsProcessed) -> DrugObsProcessed:
        stored = record.model_copy()
        if stored.id is None:
            stored.id = next(self._obs_ids)
            self._drug_obs.append(stored)
        else:
            for index, existing in enumerate(self._drug_obs):
                if existing.id == stored.id:
                    self._drug_obs[index] = stored
                    break
            else:
                self._drug_obs.append(stored)
        return stored.model_copy()

    @property
    def drug_obs_processed(self) -> list[DrugObsProcessed]:
        """Snapshot of the observation-side processed records."""

        return [record.model_copy() for record in self._drug_obs]


__all__ = ["FixtureLoadError", "InMemoryGateway"]
