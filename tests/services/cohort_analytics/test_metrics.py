from __future__ import annotations

from datetime import date, datetime

import pytest
from pydantic import ValidationError

from services.cohort_analytics.errors import DataAccessError, UnknownMetricError
from services.cohort_analytics.gateway import InMemoryGateway
from services.cohort_analytics.metrics import AgeCategory, MetricRequest, MetricResult
from services.cohort_analytics.service import CohortAnalyticsService

from tests.services.cohort_analytics.builders import (
    CONCEPTS,
    FIRST_LINE,
    HIV,
    SECOND_LINE,
    START,
    SWITCH,
    encounter,
    enrollment,
    make_settings,
    numeric,
    order,
    outcome,
    patient,
    text,
)

JANUARY = MetricRequest(start="2020-01-01", end="2020-01-31")


class _UnreachableGateway(InMemoryGateway):
    def find_program_enrollments(self, program_uuid, enrolled):
        raise DataAccessError("database unavailable", operation="find_program_enrollments")


class _NoHistoryGateway(InMemoryGateway):
    def find_last_drug_order_processed_by_patient(self, patient_id):
        return None


def _catalogue(gateway: InMemoryGateway, policy: str = "flag"):
    service = CohortAnalyticsService(gateway, make_settings(policy))
    return service.new_report("test-report").catalogue


@pytest.mark.parametrize(
    ("fragment", "bounds"),
    [
        (">=15", (15, None)),
        (">15", (16, None)),
        ("<= 14", (None, 14)),
        ("<5", (None, 4)),
        ("=3", (3, 3)),
    ],
)
def test_age_category_bounds(fragment: str, bounds: tuple) -> None:
    assert AgeCategory.parse(fragment).bounds() == bounds


@pytest.mark.parametrize("fragment", ["15+", "", ">= fifteen", "<5 OR 1=1", ">=200"])
def test_age_category_rejects_anything_but_a_single_comparison(fragment: str) -> None:
    with pytest.raises(ValueError):
        AgeCategory.parse(fragment)


def test_request_normalises_gender_and_parses_age_category() -> None:
    request = MetricRequest(start="2020-01-01", end="2020-01-31", gender=" f ", age_category=">=15")

    assert request.gender == "F"
    assert request.age_category == AgeCategory(operator=">=", value=15)
    assert str(request.age_category) == ">=15"


@pytest.mark.parametrize(
    "overrides", [{"gender": "X"}, {"gender": "M' OR '1'='1"}, {"age_category": "adult"}]
)
def test_request_rejects_unsafe_demographics(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        MetricRequest(start="2020-01-01", end="2020-01-31", **overrides)


def test_catalogue_lists_every_named_metric() -> None:
    catalogue = _catalogue(InMemoryGateway())

    names = catalogue.names()

    assert len(names) == len(set(names))
    for expected in (
        "total_cohort",
        "alive_and_on_art",
        "original_first_line",
        "third_line",
        "picked_up_arv_twelve_months",
        "cd4_at_least_200",
        "risk_factor_code_7",
        "child_regimen_holders",
    ):
        assert expected in names
    assert catalogue.describe("art_died") == "Deceased patients still enrolled in ART"


def test_unknown_metric_is_unavailable() -> None:
    catalogue = _catalogue(InMemoryGateway())

    result = catalogue.evaluate("cohort_of_everyone", JANUARY)

    assert result == MetricResult.unavailable(
        "cohort_of_everyone", "Metric 'cohort_of_everyone' is not registered."
    )
    with pytest.raises(UnknownMetricError):
        catalogue.definition("cohort_of_everyone")


@pytest.mark.parametrize(
    ("start", "end"),
    [("2020-13-01", "2020-01-31"), ("2020-02-01", "2020-01-31"), ("", "2020-01-31")],
)
def test_invalid_period_makes_the_metric_unavailable(start: str, end: str) -> None:
    gateway = InMemoryGateway(enrollments=[enrollment(1, datetime(2020, 1, 2))])
    catalogue = _catalogue(gateway)

    result = catalogue.evaluate("total_cohort", MetricRequest(start=start, end=end))

    assert result.available is False
    assert result.count is None
    assert result.patients == frozenset()
    assert result.reason


def test_regimen_holder_metrics_require_a_drug_regimen() -> None:
    gateway = InMemoryGateway(
        enrollments=[enrollment(1, datetime(2020, 1, 2))],
        drug_orders=[order(1, START, FIRST_LINE, datetime(2019, 3, 1))],
    )
    catalogue = _catalogue(gateway)

    missing = catalogue.evaluate("first_line_regimen_holders", JANUARY)
    held = catalogue.evaluate(
        "first_line_regimen_holders", JANUARY.model_copy(update={"drug_regimen": "TDF/3TC/EFV"})
    )

    assert missing.available is False
    assert "drug_regimen" in missing.reason
    assert held.patients == {1}
    assert held.count == 1


def test_gender_and_age_filters_apply_to_any_metric() -> None:
    gateway = InMemoryGateway(
        patients=[
            patient(1, gender="M", birthdate=date(1990, 1, 1)),
            patient(2, gender="F", birthdate=date(1990, 1, 1)),
            patient(3, gender="F", birthdate=date(2016, 6, 1)),
        ],
        enrollments=[enrollment(pid, datetime(2020, 1, 2)) for pid in (1, 2, 3)],
    )
    catalogue = _catalogue(gateway)

    women = catalogue.evaluate("alive_and_on_art", JANUARY.model_copy(update={"gender": "F"}))
    under_five = catalogue.evaluate(
        "enrolled_in_art", MetricRequest(start="2020-01-01", end="2020-01-31", age_category="<5")
    )
    adult_women = catalogue.evaluate(
        "total_cohort",
        MetricRequest(start="2020-01-01", end="2020-01-31", gender="F", age_category=">=15"),
    )

    assert women.patients == {2, 3}
    assert under_five.patients == {3}
    assert adult_women.patients == {2}


def test_enrollment_metrics() -> None:
    gateway = InMemoryGateway(
        patients=[patient(2, death_date=datetime(2020, 1, 20))],
        enrollments=[
            enrollment(1, datetime(2020, 1, 2)),
            enrollment(2, datetime(2020, 1, 2)),
            enrollment(3, datetime(2020, 1, 2), program=HIV),
        ],
        observations=[outcome(1, CONCEPTS.transfer_in[0], datetime(2020, 1, 2))],
    )
    catalogue = _catalogue(gateway)

    results = catalogue.evaluate_all(
        JANUARY, ["enrolled_in_art", "enrolled_in_hiv_care", "started_on_art", "deaths_reported"]
    )

    assert {name: result.patients for name, result in results.items()} == {
        "enrolled_in_art": {1, 2},
        "enrolled_in_hiv_care": {3},
        "started_on_art": {2},
        "deaths_reported": {2},
    }


def test_observation_indicators() -> None:
    when = datetime(2020, 1, 15)
    gateway = InMemoryGateway(
        observations=[
            numeric(1, CONCEPTS.cd4_count, 350, when),
            numeric(2, CONCEPTS.cd4_count, 150, when),
            numeric(3, CONCEPTS.cd4_count, 200, when),
            outcome(4, CONCEPTS.cd4_count, when, concept=CONCEPTS.tests_ordered),
            outcome(5, CONCEPTS.viral_load, when, concept=CONCEPTS.tests_ordered),
            outcome(6, CONCEPTS.performance_scale_b, when, concept=CONCEPTS.performance_scale),
            outcome(7, CONCEPTS.risk_factor_codes[2], when, concept=CONCEPTS.risk_factor_question),
            outcome(
                8,
                CONCEPTS.risk_factor_codes[2],
                when,
                concept=CONCEPTS.risk_factor_question,
                voided=True,
            ),
            numeric(9, CONCEPTS.opportunistic_infection_treatment, 1, when),
        ]
    )
    catalogue = _catalogue(gateway)

    results = catalogue.evaluate_all(
        JANUARY,
        [
            "cd4_at_least_200",
            "tested_for_cd4_count",
            "tested_for_viral_load",
            "performance_scale_a",
            "performance_scale_b",
            "risk_factor_code_3",
            "treated_for_opportunistic_infection",
        ],
    )

    assert {name: result.patients for name, result in results.items()} == {
        "cd4_at_least_200": {1, 3},
        "tested_for_cd4_count": {4},
        "tested_for_viral_load": {5},
        "performance_scale_a": frozenset(),
        "performance_scale_b": {6},
        "risk_factor_code_3": {7},
        "treated_for_opportunistic_infection": {9},
    }


def test_ambiguity_under_raise_policy_makes_the_metric_unavailable() -> None:
    gateway = _NoHistoryGateway(drug_orders=[order(1, SWITCH, SECOND_LINE, datetime(2020, 1, 5))])

    flagged = _catalogue(gateway).evaluate("second_line", JANUARY)
    raised = _catalogue(gateway, policy="raise").evaluate("second_line", JANUARY)

    assert flagged.available is True
    assert flagged.count == 0
    assert raised.available is False
    assert "Patient 1 is ambiguous" in raised.reason


def test_data_access_failures_propagate() -> None:
    catalogue = _catalogue(_UnreachableGateway())

    with pytest.raises(DataAccessError):
        catalogue.evaluate("enrolled_in_art", JANUARY)


def test_unlisted_regimen_type_does_not_break_regimen_tiers() -> None:
    gateway = InMemoryGateway(
        drug_orders=[
            order(1, START, FIRST_LINE, datetime(2020, 1, 5)),
            order(1, START, "TB drugs", datetime(2020, 3, 1), drug="RHZE"),
            order(2, START, FIRST_LINE, datetime(2020, 1, 6)),
            order(2, SWITCH, SECOND_LINE, datetime(2020, 1, 20)),
        ]
    )
    catalogue = _catalogue(gateway)

    results = catalogue.evaluate_all(JANUARY, ["original_first_line", "second_line"])

    assert results["original_first_line"].patients == {1}
    assert results["second_line"].patients == {2}


def test_medically_eligible_patients_waiting_for_art() -> None:
    gateway = InMemoryGateway(
        patients=[
            patient(1),
            patient(2),
            patient(3),
            patient(4, death_date=datetime(2020, 1, 10)),
            patient(5),
        ],
        encounters=[
            encounter(1, CONCEPTS.hiv_enrollment_encounter, datetime(2020, 1, 5)),
            encounter(2, CONCEPTS.hiv_enrollment_encounter, datetime(2020, 1, 5)),
            encounter(2, CONCEPTS.art_encounter, datetime(2020, 1, 20)),
            encounter(3, CONCEPTS.hiv_enrollment_encounter, datetime(2019, 12, 28)),
            encounter(4, CONCEPTS.hiv_enrollment_encounter, datetime(2020, 1, 6)),
            encounter(5, CONCEPTS.hiv_enrollment_encounter, datetime(2020, 1, 7)),
            encounter(5, CONCEPTS.art_encounter, datetime(2020, 2, 2)),
        ],
    )

    result = _catalogue(gateway).evaluate("medically_eligible_waiting_for_art", JANUARY)

    assert result.patients == {1, 5}


def test_active_follow_up_at_the_start_and_end_of_the_month() -> None:
    gateway = InMemoryGateway(
        enrollments=[
            enrollment(1, datetime(2020, 2, 10)),
            enrollment(2, datetime(2020, 2, 10), completed=datetime(2020, 3, 1, 8)),
            enrollment(3, datetime(2020, 2, 10), completed=datetime(2020, 2, 20)),
            enrollment(4, datetime(2020, 3, 5)),
            enrollment(5, datetime(2020, 1, 31)),
            enrollment(6, datetime(2020, 2, 29, 16)),
        ]
    )
    march = MetricRequest(start="2020-03-01", end="2020-03-31")

    results = _catalogue(gateway).evaluate_all(
        march, ["active_follow_up_at_start_of_month", "active_follow_up_at_end_of_month"]
    )

    assert results["active_follow_up_at_start_of_month"].patients == {1, 2, 6}
    assert results["active_follow_up_at_end_of_month"].patients == {1, 4, 6}


def test_hiv_positive_tb_patients() -> None:
    def tb_positive(patient_id: int, when: datetime):
        return outcome(patient_id, CONCEPTS.tb_positive, when, concept=CONCEPTS.tb_status)

    gateway = InMemoryGateway(
        patients=[patient(2, death_date=datetime(2020, 1, 20))],
        enrollments=[
            enrollment(1, datetime(2020, 1, 2)),
            enrollment(2, datetime(2020, 1, 2)),
            enrollment(3, datetime(2020, 1, 2)),
            enrollment(4, datetime(2020, 1, 2)),
            enrollment(5, datetime(2019, 12, 10)),
            enrollment(6, datetime(2020, 1, 2), completed=datetime(2020, 1, 25)),
        ],
        observations=[
            tb_positive(1, datetime(2020, 1, 10)),
            tb_positive(2, datetime(2020, 1, 10)),
            tb_positive(3, datetime(2019, 11, 1)),
            outcome(4, CONCEPTS.died, datetime(2020, 1, 10), concept=CONCEPTS.tb_status),
            tb_positive(5, datetime(2020, 1, 3)),
            tb_positive(6, datetime(2020, 1, 3)),
        ],
        encounters=[encounter(2, CONCEPTS.art_encounter, datetime(2020, 1, 5))],
    )

    results = _catalogue(gateway).evaluate_all(
        JANUARY, ["hiv_positive_tb_patients", "hiv_positive_tb_patients_cumulative"]
    )

    assert results["hiv_positive_tb_patients"].patients == {1, 3}
    assert results["hiv_positive_tb_patients_cumulative"].patients == {1, 3, 5}


def test_adherence_assessment_and_levels() -> None:
    question = CONCEPTS.adherence_assessment
    high, middle, low = CONCEPTS.adherence_levels
    gateway = InMemoryGateway(
        enrollments=[
            enrollment(1, datetime(2020, 1, 2)),
            enrollment(2, datetime(2020, 1, 2)),
            enrollment(3, datetime(2019, 12, 10)),
            enrollment(4, datetime(2019, 12, 10)),
            enrollment(5, datetime(2020, 1, 2)),
            enrollment(5, datetime(2019, 6, 1), program=HIV, completed=datetime(2019, 12, 20)),
            enrollment(6, datetime(2020, 1, 2), completed=datetime(2020, 1, 25)),
        ],
        observations=[
            text(1, question, high, datetime(2020, 1, 15)),
            text(2, question, middle, datetime(2020, 1, 15)),
            text(3, question, low, datetime(2020, 1, 15)),
            text(4, question, high, datetime(2020, 1, 15)),
            text(5, question, high, datetime(2020, 1, 15)),
            text(6, question, low, datetime(2020, 1, 15)),
        ],
        drug_orders=[order(3, START, FIRST_LINE, datetime(2019, 12, 10))],
    )

    results = _catalogue(gateway).evaluate_all(
        JANUARY,
        ["assessed_for_adherence", "adherence_level_1", "adherence_level_2", "adherence_level_3"],
    )

    assert {name: result.patients for name, result in results.items()} == {
        "assessed_for_adherence": {1, 2, 3, 5},
        "adherence_level_1": {1},
        "adherence_level_2": {2},
        "adherence_level_3": {3},
    }


def test_stock_dispensed_counts_confirmed_dispensing_in_follow_up() -> None:
    gateway = InMemoryGateway(
        patients=[patient(5, death_date=datetime(2020, 1, 20))],
        enrollments=[
            enrollment(1, datetime(2020, 1, 2)),
            enrollment(2, datetime(2020, 1, 2)),
            enrollment(3, datetime(2019, 12, 10)),
            enrollment(4, datetime(2020, 1, 2)),
            enrollment(5, datetime(2020, 1, 2)),
        ],
        drug_orders=[
            order(1, START, FIRST_LINE, datetime(2020, 1, 2), processed=True),
            order(2, START, FIRST_LINE, datetime(2020, 1, 2)),
            order(3, START, FIRST_LINE, datetime(2019, 12, 10), processed=True),
            order(4, START, FIRST_LINE, datetime(2020, 1, 2), dose="2 tabs OD", processed=True),
            order(5, START, FIRST_LINE, datetime(2020, 1, 2), processed=True),
        ],
        encounters=[encounter(5, CONCEPTS.art_encounter, datetime(2020, 1, 2))],
    )
    catalogue = _catalogue(gateway)
    by_drug = JANUARY.model_copy(update={"drug_regimen": "TDF/3TC/EFV"})

    with_dose = catalogue.evaluate(
        "stock_dispensed", by_drug.model_copy(update={"dose_regimen": "1 tab OD"})
    )
    any_dose = catalogue.evaluate("stock_dispensed", by_drug)
    missing = catalogue.evaluate("stock_dispensed", JANUARY)

    assert with_dose.patients == {1, 3}
    assert any_dose.patients == {1, 3, 4}
    assert missing.available is False
    assert "drug_regimen" in missing.reason
