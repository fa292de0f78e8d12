"""Named reporting metrics over the cohort engine."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, FrozenSet, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from services.cohort_analytics.adherence import VisitStreakPicker
from services.cohort_analytics.cohorts import CohortSetBuilder
from services.cohort_analytics.errors import (
    ClassificationAmbiguityError,
    InvalidPeriodError,
    UnknownMetricError,
)
from services.cohort_analytics.gateway.interfaces import QueryGateway
from services.cohort_analytics.models import Observation, PatientSet, RegimenType
from services.cohort_analytics.period import DateRange, Period, parse_period
from services.cohort_analytics.regimens import RegimenLineageClassifier
from shared.observability import get_logger

logger = get_logger(__name__)

AgeOperator = Literal[">=", ">", "<=", "<", "="]

_AGE_FRAGMENT = re.compile(r"^\s*(>=|<=|>|<|=)\s*(\d{1,3})\s*$")


class AgeCategory(BaseModel):
    """Structured age comparison such as ``>= 15``."""

    model_config = ConfigDict(frozen=True)

    operator: AgeOperator
    value: int = Field(ge=0, le=150)

    @classmethod
    def parse(cls, fragment: str) -> "AgeCategory":
        """Parse a comparator fragment like ``>=15`` or ``<5``."""

        match = _AGE_FRAGMENT.match(fragment or "")
        if match is None:
            raise ValueError(
                f"Age category {fragment!r} must be a comparator followed by whole years, e.g. '>=15'."
            )
        return cls(operator=match.group(1), value=int(match.group(2)))

    def bounds(self) -> tuple[int | None, int | None]:
        """Inclusive ``(min_age, max_age)`` equivalent of the comparison."""

        if self.operator == ">=":
            return self.value, None
        if self.operator == ">":
            return self.value + 1, None
        if self.operator == "<=":
            return None, self.value
        if self.operator == "<":
            return None, self.value - 1
        return self.value, self.value

    def __str__(self) -> str:
        return f"{self.operator}{self.value}"


class MetricRequest(BaseModel):
    """Inputs of a single metric evaluation.

    Period boundaries are kept as given and parsed at evaluation time so
    that a malformed date makes the metric unavailable instead of failing
    request construction.
    """

    model_config = ConfigDict(frozen=True)

    start: Union[date, str]
    end: Union[date, str]
    gender: Optional[Literal["M", "F"]] = None
    age_category: Optional[AgeCategory] = None
    drug_regimen: Optional[str] = None
    dose_regimen: Optional[str] = None

    @field_validator("gender", mode="before")
    @classmethod
    def _normalise_gender(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip().upper()
            return value or None
        return value

    @field_validator("age_category", mode="before")
    @classmethod
    def _parse_age_category(cls, value: object) -> object:
        if isinstance(value, str):
            if not value.strip():
                return None
            return AgeCategory.parse(value)
        return value


class MetricResult(BaseModel):
    """Outcome of one metric: a patient set and its count, or a reason."""

    model_config = ConfigDict(frozen=True)

    name: str
    patients: FrozenSet[int] = frozenset()
    count: Optional[int] = None
    available: bool = True
    reason: Optional[str] = None

    @classmethod
    def of(cls, name: str, patients: PatientSet) -> "MetricResult":
        return cls(name=name, patients=patients, count=len(patients))

    @classmethod
    def unavailable(cls, name: str, reason: str) -> "MetricResult":
        return cls(name=name, available=False, reason=reason)


Compute = Callable[[Period, MetricRequest], PatientSet]


@dataclass(frozen=True, slots=True)
class MetricDefinition:
    name: str
    description: str
    compute: Compute
    demographics: bool = True
    requires: tuple[str, ...] = ()


class MetricCatalogue:
    """Registry of every named metric, each independently invocable."""

    def __init__(
        self,
        gateway: QueryGateway,
        cohorts: CohortSetBuilder,
        classifier: RegimenLineageClassifier,
        picker: VisitStreakPicker,
    ) -> None:
        self._gateway = gateway
        self._cohorts = cohorts
        self._classifier = classifier
        self._picker = picker
        self._definitions: Dict[str, MetricDefinition] = {
            definition.name: definition for definition in self._build()
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def names(self) -> list[str]:
        return list(self._definitions)

    def describe(self, name: str) -> str:
        return self.definition(name).description

    def definition(self, name: str) -> MetricDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise UnknownMetricError(name) from None

    def evaluate(self, name: str, request: MetricRequest) -> MetricResult:
        """Evaluate ``name`` for ``request``.

        Invalid periods, unknown names, missing regimen inputs and ambiguous
        patients under the ``raise`` policy yield an unavailable result.
        Data access failures propagate.
        """

        try:
            definition = self.definition(name)
            period = parse_period(request.start, request.end)
            missing = [field for field in definition.requires if not getattr(request, field)]
            if missing:
                return self._unavailable(
                    name, f"Metric '{name}' requires {', '.join(missing)}."
                )
            patients = definition.compute(period, request)
            if definition.demographics:
                patients = self._apply_demographics(patients, period, request)
        except (InvalidPeriodError, UnknownMetricError, ClassificationAmbiguityError) as exc:
            return self._unavailable(name, str(exc))

        logger.info("metric_evaluated", metric=name, period=str(period), count=len(patients))
        return MetricResult.of(name, patients)

    def evaluate_all(
        self, request: MetricRequest, names: Iterable[str] | None = None
    ) -> dict[str, MetricResult]:
        selected = list(names) if names is not None else self.names()
        return {name: self.evaluate(name, request) for name in selected}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _unavailable(self, name: str, reason: str) -> MetricResult:
        logger.warning("metric_unavailable", metric=name, reason=reason)
        return MetricResult.unavailable(name, reason)

    def _apply_demographics(
        self, patients: PatientSet, period: Period, request: MetricRequest
    ) -> PatientSet:
        if request.gender is not None:
            patients = self._cohorts.filter_by_gender(patients, request.gender)
        if request.age_category is not None:
            min_age, max_age = request.age_category.bounds()
            patients = self._cohorts.filter_by_age(patients, period.end, min_age, max_age)
        return patients

    def _observed(
        self,
        name: str,
        period: Period,
        *,
        concepts: Iterable[str] | None = None,
        value_coded: Iterable[str] | None = None,
        predicate: Callable[[Observation], bool] | None = None,
        history: bool = False,
    ) -> PatientSet:
        """Patients with a matching observation in the period.

        With ``history`` any observation recorded up to the end of the period
        counts.
        """

        window = DateRange.through(period.window.end) if history else period.window

        def compute() -> PatientSet:
            observations = self._gateway.find_observations(
                window,
                concepts=tuple(concepts) if concepts is not None else None,
                value_coded=tuple(value_coded) if value_coded is not None else None,
            )
            return frozenset(
                obs.person_id
                for obs in observations
                if predicate is None or predicate(obs)
            )

        return self._cohorts.scope.cached((name, None, period), compute)

    def _span(self, method: Callable[..., PatientSet]) -> Compute:
        return lambda period, _request: method(period.start, period.end)

    def _holders(self, regimen_type: RegimenType) -> Compute:
        def compute(period: Period, request: MetricRequest) -> PatientSet:
            return self._classifier.regimen_holders(
                period.start,
                period.end,
                regimen_types=(regimen_type,),
                drug_regimen=request.drug_regimen or "",
                dose_regimen=request.dose_regimen,
            )

        return compute

    def _risk_factor(self, index: int) -> Compute:
        concepts = self._cohorts.concepts

        def compute(period: Period, _request: MetricRequest) -> PatientSet:
            return self._observed(
                f"risk_factor_code_{index + 1}",
                period,
                concepts=(concepts.risk_factor_question,),
                value_coded=(concepts.risk_factor_codes[index],),
            )

        return compute

    def _performance_scale(self, name: str, answer: str) -> Compute:
        question = self._cohorts.concepts.performance_scale
        return lambda period, _request: self._observed(
            name, period, concepts=(question,), value_coded=(answer,)
        )

    def _enrolled_in_art(self, period: Period, _request: MetricRequest) -> PatientSet:
        return self._cohorts.enrolled_in_program(
            self._cohorts.concepts.art_program, period.start, period.end
        )

    def _enrolled_in_hiv_care(self, period: Period, _request: MetricRequest) -> PatientSet:
        return self._cohorts.enrolled_in_program(
            self._cohorts.concepts.hiv_program, period.start, period.end
        )

    def _started_on_art(self, period: Period, request: MetricRequest) -> PatientSet:
        return self._enrolled_in_art(period, request) - self._cohorts.transferred_in(
            period.start, period.end
        )

    def _deaths_reported(self, period: Period, request: MetricRequest) -> PatientSet:
        deceased = frozenset(
            patient.patient_id
            for patient in self._gateway.find_deceased_patients(period.window)
        )
        return self._enrolled_in_art(period, request) & deceased

    def _cd4_at_least_threshold(self, period: Period, _request: MetricRequest) -> PatientSet:
        concepts = self._cohorts.concepts
        threshold = concepts.cd4_threshold
        return self._observed(
            "cd4_at_least_200",
            period,
            concepts=(concepts.cd4_count,),
            predicate=lambda obs: obs.value_numeric is not None
            and obs.value_numeric >= threshold,
        )

    def _tested_for(self, name: str, answer: str) -> Compute:
        question = self._cohorts.concepts.tests_ordered
        return lambda period, _request: self._observed(
            name, period, concepts=(question,), value_coded=(answer,)
        )

    def _treated_for_opportunistic_infection(
        self, period: Period, _request: MetricRequest
    ) -> PatientSet:
        return self._observed(
            "treated_for_opportunistic_infection",
            period,
            concepts=(self._cohorts.concepts.opportunistic_infection_treatment,),
        )

    def _tb_positive(self, period: Period) -> PatientSet:
        concepts = self._cohorts.concepts
        return self._observed(
            "tb_positive",
            period,
            concepts=(concepts.tb_status,),
            value_coded=(concepts.tb_positive,),
            history=True,
        )

    def _left_tb_care(self, period: Period) -> PatientSet:
        cohorts = self._cohorts
        return (
            cohorts.died_in_care(period.start, period.end)
            | cohorts.lost_to_follow_up(period.start, period.end)
            | cohorts.program_completed(cohorts.concepts.art_program, period.start, period.end)
        )

    def _hiv_positive_tb(self, period: Period, request: MetricRequest) -> PatientSet:
        enrolled = self._enrolled_in_art(period, request)
        return (enrolled & self._tb_positive(period)) - self._left_tb_care(period)

    def _hiv_positive_tb_cumulative(
        self, period: Period, _request: MetricRequest
    ) -> PatientSet:
        in_care = self._cohorts.active_follow_up_at_end(period.start, period.end)
        return (in_care & self._tb_positive(period)) - self._left_tb_care(period)

    def _adherence_cohort(self, period: Period, request: MetricRequest) -> PatientSet:
        """New enrollees plus carried-forward enrollees with a processed regimen."""

        def with_regimen() -> PatientSet:
            return frozenset(
                record.patient_id
                for record in self._gateway.find_drug_orders_processed(
                    DateRange.through(period.window.end)
                )
            )

        carried = self._cohorts.carried_forward(period.start, period.end)
        if carried:
            carried &= self._cohorts.scope.cached(
                ("with_processed_regimen", None, period), with_regimen
            )
        return self._enrolled_in_art(period, request) | carried

    def _assessed_for_adherence(self, period: Period, request: MetricRequest) -> PatientSet:
        cohorts = self._cohorts
        assessed = self._observed(
            "assessed_for_adherence",
            period,
            concepts=(cohorts.concepts.adherence_assessment,),
            history=True,
        )
        left = cohorts.died_in_care(period.start, period.end) | cohorts.program_completed(
            cohorts.concepts.art_program, period.start, period.end
        )
        return (self._adherence_cohort(period, request) & assessed) - left

    def _adherence_level(self, index: int) -> Compute:
        cohorts = self._cohorts
        concepts = cohorts.concepts
        answer = concepts.adherence_levels[index]
        name = f"adherence_level_{index + 1}"

        def compute(period: Period, request: MetricRequest) -> PatientSet:
            reported = self._observed(
                name,
                period,
                concepts=(concepts.adherence_assessment,),
                predicate=lambda obs: obs.value_text == answer,
                history=True,
            )
            left = (
                cohorts.died_in_care(period.start, period.end)
                | cohorts.program_completed(concepts.art_program, period.start, period.end)
                | cohorts.completed_before(concepts.hiv_program, period.start, period.end)
            )
            return (self._adherence_cohort(period, request) & reported) - left

        return compute

    def _stock_dispensed(self, period: Period, request: MetricRequest) -> PatientSet:
        dispensed = {
            record.patient_id
            for record in self._gateway.find_drug_orders_processed(
                DateRange.through(period.window.end),
                drug_regimen=request.drug_regimen,
                dose_regimen=request.dose_regimen,
                processed_only=True,
            )
        }
        in_care = self._cohorts.active_follow_up_at_end(period.start, period.end)
        return (in_care & dispensed) - self._cohorts.died_in_care(period.start, period.end)

    def _build(self) -> list[MetricDefinition]:
        cohorts = self._cohorts
        classifier = self._classifier
        picker = self._picker
        concepts = cohorts.concepts

        spans: list[tuple[str, str, Callable[..., PatientSet]]] = [
            ("transferred_in", "Patients transferred in", cohorts.transferred_in),
            ("transferred_out", "Patients transferred out", cohorts.transferred_out),
            ("lost_to_follow_up", "Patients lost to follow-up", cohorts.lost_to_follow_up),
            ("art_stopped", "Patients who stopped ART", cohorts.art_stopped),
            ("art_died", "Deceased patients still enrolled in ART", cohorts.art_died),
            ("hiv_stopped", "Patients who stopped HIV care", cohorts.hiv_stopped),
            ("exited", "Patients in any exit category", cohorts.exited),
            ("total_cohort", "ART enrollees less transfers out", cohorts.total_cohort),
            ("alive_and_on_art", "Cohort members alive and on ART", cohorts.alive_and_on_art),
            (
                "medically_eligible_waiting_for_art",
                "Living HIV intakes without an ART encounter",
                cohorts.waiting_for_art,
            ),
            (
                "active_follow_up_at_start_of_month",
                "Last month's ART enrollees still in care when the period opened",
                cohorts.active_follow_up_at_start,
            ),
            (
                "active_follow_up_at_end_of_month",
                "New ART enrollees plus last month's enrollees still in care",
                cohorts.active_follow_up_at_end,
            ),
            (
                "original_first_line",
                "Patients on their original first-line regimen",
                classifier.original_first_line,
            ),
            (
                "alternate_first_line",
                "Patients on a substituted first-line regimen",
                classifier.alternate_first_line,
            ),
            ("second_line", "Patients switched to second line", classifier.second_line),
            ("third_line", "Patients switched to third line", classifier.third_line),
            (
                "picked_up_arv_six_months",
                "ARV pick-up over six consecutive visits",
                picker.picked_up_arv_six_months,
            ),
            (
                "picked_up_arv_twelve_months",
                "ARV pick-up over twelve consecutive visits",
                picker.picked_up_arv_twelve_months,
            ),
        ]

        definitions = [
            MetricDefinition(
                "enrolled_in_art", "Patients enrolled in the ART program", self._enrolled_in_art
            ),
            MetricDefinition(
                "enrolled_in_hiv_care",
                "Patients newly enrolled in HIV care",
                self._enrolled_in_hiv_care,
            ),
            MetricDefinition(
                "started_on_art", "New ART enrollees not transferred in", self._started_on_art
            ),
            MetricDefinition(
                "deaths_reported", "ART enrollees reported dead", self._deaths_reported
            ),
        ]
        definitions.extend(
            MetricDefinition(name, description, self._span(method))
            for name, description, method in spans
        )
        definitions.extend(
            [
                MetricDefinition(
                    "cd4_at_least_200",
                    "Patients with a CD4 count at or above the threshold",
                    self._cd4_at_least_threshold,
                ),
                MetricDefinition(
                    "tested_for_cd4_count",
                    "Patients tested for CD4 count",
                    self._tested_for("tested_for_cd4_count", concepts.cd4_count),
                ),
                MetricDefinition(
                    "tested_for_viral_load",
                    "Patients tested for viral load",
                    self._tested_for("tested_for_viral_load", concepts.viral_load),
                ),
                MetricDefinition(
                    "treated_for_opportunistic_infection",
                    "Patients treated for opportunistic infections",
                    self._treated_for_opportunistic_infection,
                ),
            ]
        )
        for label, answer in (
            ("a", concepts.performance_scale_a),
            ("b", concepts.performance_scale_b),
            ("c", concepts.performance_scale_c),
        ):
            name = f"performance_scale_{label}"
            definitions.append(
                MetricDefinition(
                    name,
                    f"Patients on performance scale {label.upper()}",
                    self._performance_scale(name, answer),
                )
            )
        definitions.extend(
            MetricDefinition(
                f"risk_factor_code_{index + 1}",
                f"Patients reporting risk factor code {index + 1}",
                self._risk_factor(index),
            )
            for index in range(len(concepts.risk_factor_codes))
        )
        definitions.extend(
            [
                MetricDefinition(
                    "hiv_positive_tb_patients",
                    "New ART enrollees with a positive TB status",
                    self._hiv_positive_tb,
                ),
                MetricDefinition(
                    "hiv_positive_tb_patients_cumulative",
                    "Patients in ART follow-up with a positive TB status",
                    self._hiv_positive_tb_cumulative,
                ),
                MetricDefinition(
                    "assessed_for_adherence",
                    "Patients in ART follow-up assessed for adherence",
                    self._assessed_for_adherence,
                ),
            ]
        )
        definitions.extend(
            MetricDefinition(
                f"adherence_level_{index + 1}",
                f"Patients reporting adherence {answer}",
                self._adherence_level(index),
            )
            for index, answer in enumerate(concepts.adherence_levels)
        )
        definitions.append(
            MetricDefinition(
                "stock_dispensed",
                "Patients in ART follow-up dispensed a regimen",
                self._stock_dispensed,
                requires=("drug_regimen",),
            )
        )
        for name, description, regimen_type in (
            ("first_line_regimen_holders", "Holders of a first-line regimen", RegimenType.FIRST_LINE),
            ("fdc_regimen_holders", "Holders of a fixed-dose combination", RegimenType.FDC),
            ("second_line_regimen_holders", "Holders of a second-line regimen", RegimenType.SECOND_LINE),
            ("child_regimen_holders", "Children holding an ARV regimen", RegimenType.CHILD_ARV),
        ):
            definitions.append(
                MetricDefinition(
                    name,
                    description,
                    self._holders(regimen_type),
                    requires=("drug_regimen",),
                )
            )
        return definitions


__all__ = [
    "AgeCategory",
    "MetricCatalogue",
    "MetricDefinition",
    "MetricRequest",
    "MetricResult",
]
