"""Pydantic models describing rows read from the clinical data store."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, FrozenSet, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "DrugObsProcessed",
    "DrugOrderProcessed",
    "Encounter",
    "Observation",
    "Patient",
    "PatientSet",
    "ProgramEnrollment",
    "RegimenChangeType",
    "RegimenType",
    "Visit",
]


PatientSet = FrozenSet[int]


class RegimenChangeType(str, Enum):
    """Kind of regimen event recorded on a processed drug order."""

    START = "Start"
    RESTART = "Restart"
    SUBSTITUTE = "Substitute"
    SWITCH = "Switch"

    def __str__(self) -> str:  # pragma: no cover - trivial wrapper
        return self.value


class RegimenType(str, Enum):
    """ARV regimen categories, spelled exactly as the host platform stores them.

    The platform records other categories too; see
    :attr:`DrugOrderProcessed.type_of_regimen`.
    """

    FIRST_LINE = "First line Anti-retoviral drugs"
    FDC = "Fixed dose combinations (FDCs)"
    SECOND_LINE = "Second line ART"
    CHILD_ARV = "ARV drugs for child"

    def __str__(self) -> str:  # pragma: no cover - trivial wrapper
        return self.value


def _member_or_raw(enum: type[Enum], value: Any) -> Any:
    if isinstance(value, str) and not isinstance(value, enum):
        try:
            return enum(value)
        except ValueError:
            return value
    return value


class _Row(BaseModel):
    """Base for read-only store rows."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


class Patient(_Row):
    """Demographic view of a patient."""

    patient_id: int
    gender: Optional[str] = Field(default=None, description="M or F")
    birthdate: Optional[date] = None
    death_date: Optional[datetime] = None
    dead: bool = False

    def age_on(self, day: date) -> int | None:
        """Return the age in completed years on ``day``."""

        if self.birthdate is None:
            return None
        years = day.year - self.birthdate.year
        if (day.month, day.day) < (self.birthdate.month, self.birthdate.day):
            years -= 1
        return years


class ProgramEnrollment(_Row):
    """A patient's enrollment in a care program."""

    enrollment_id: int
    patient_id: int
    program_uuid: str
    date_enrolled: datetime
    date_completed: Optional[datetime] = None
    voided: bool = False

    @property
    def is_active(self) -> bool:
        return self.date_completed is None


class Observation(_Row):
    """A single clinical observation."""

    obs_id: int
    person_id: int
    concept: str = Field(description="UUID of the question concept")
    value_coded: Optional[str] = Field(
        default=None, description="UUID of the coded answer concept"
    )
    value_numeric: Optional[float] = None
    value_text: Optional[str] = None
    obs_datetime: datetime
    voided: bool = False


class Visit(_Row):
    """A facility visit."""

    visit_id: int
    patient_id: int
    start_datetime: datetime
    stop_datetime: Optional[datetime] = None
    voided: bool = False


class Encounter(_Row):
    """A clinical encounter, keyed by the name of its encounter type."""

    encounter_id: int
    patient_id: int
    encounter_type: str
    encounter_datetime: datetime
    voided: bool = False


class DrugOrderProcessed(BaseModel):
    """One step of a patient's regimen lineage.

    Instances are written back by the engine, so unlike the other rows they
    stay mutable until persisted; ``discontinued_date`` is set when a later
    regimen event supersedes the record.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[int] = None
    patient_id: int
    drug_order_id: Optional[int] = None
    visit_id: Optional[int] = None
    start_date: datetime
    discontinued_date: Optional[datetime] = None
    # Known values load as enum members; anything else the platform stores
    # (a TB or PEP regimen, a retired category) stays a raw string and matches
    # no regimen tier.
    regimen_change_type: Optional[Union[RegimenChangeType, str]] = None
    type_of_regimen: Optional[Union[RegimenType, str]] = None
    drug_regimen: Optional[str] = None
    dose_regimen: Optional[str] = None
    created_date: datetime = Field(default_factory=datetime.now)
    processed_status: bool = False

    @field_validator("regimen_change_type", mode="before")
    @classmethod
    def _known_change_type(cls, value: Any) -> Any:
        return _member_or_raw(RegimenChangeType, value)

    @field_validator("type_of_regimen", mode="before")
    @classmethod
    def _known_regimen_type(cls, value: Any) -> Any:
        return _member_or_raw(RegimenType, value)


class DrugObsProcessed(BaseModel):
    """Observation-side counterpart of :class:`DrugOrderProcessed`."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[int] = None
    patient_id: int
    obs_id: Optional[int] = None
    processed_date: datetime
    drug_regimen: Optional[str] = None
    dose_regimen: Optional[str] = None
    created_date: datetime = Field(default_factory=datetime.now)
