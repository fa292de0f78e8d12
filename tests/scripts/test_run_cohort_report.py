from __future__ import annotations

import json
from pathlib import Path

import pytest

from scripts import run_cohort_report

FIXTURE = {
    "patients": [
        {"patient_id": 1, "gender": "M", "birthdate": "1990-01-01"},
        {"patient_id": 2, "gender": "F", "birthdate": "1985-06-15"},
    ],
    "enrollments": [
        {
            "enrollment_id": 1,
            "patient_id": 1,
            "program_uuid": "96ec813f-aaf0-45b2-add6-e661d5bf79d6",
            "date_enrolled": "2020-01-01T08:00:00",
        },
        {
            "enrollment_id": 2,
            "patient_id": 2,
            "program_uuid": "96ec813f-aaf0-45b2-add6-e661d5bf79d6",
            "date_enrolled": "2020-01-03T08:00:00",
            "date_completed": "2020-01-15T08:00:00",
        },
    ],
    "observations": [
        {
            "obs_id": 1,
            "person_id": 2,
            "concept": "160649AAAAAAAAAAAAAAAAAAAAAAAAAAAAAA",
            "value_coded": "159492AAAAAAAAAAAAAAAAAAAAAAAAAAAAAA",
            "obs_datetime": "2020-01-10T09:00:00",
        }
    ],
    "drug_orders_processed": [
        {
            "id": 1,
            "patient_id": 1,
            "start_date": "2020-01-01T08:30:00",
            "created_date": "2020-01-01T08:30:00",
            "regimen_change_type": "Start",
            "type_of_regimen": "First line Anti-retoviral drugs",
            "drug_regimen": "TDF/3TC/EFV",
            "dose_regimen": "1 tab OD",
        }
    ],
}


@pytest.fixture
def fixture_path(tmp_path: Path) -> Path:
    path = tmp_path / "cohort.json"
    path.write_text(json.dumps(FIXTURE), encoding="utf-8")
    return path


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, str, str]:
    exit_code = run_cohort_report.main(list(argv))
    captured = capsys.readouterr()
    return exit_code, captured.out, captured.err


def test_main_prints_requested_metrics(
    fixture_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code, out, _ = _run(
        capsys,
        "--fixture",
        str(fixture_path),
        "--start",
        "2020-01-01",
        "--end",
        "2020-01-31",
        "--metric",
        "total_cohort",
        "--metric",
        "transferred_out",
        "--metric",
        "art_stopped",
        "--metric",
        "original_first_line",
        "--include-patients",
    )

    assert exit_code == 0
    report = json.loads(out)
    assert report["period"] == {"start": "2020-01-01", "end": "2020-01-31"}
    assert report["metrics"]["total_cohort"] == {"available": True, "count": 1, "patients": [1]}
    assert report["metrics"]["transferred_out"]["patients"] == [2]
    assert report["metrics"]["art_stopped"]["count"] == 0
    assert report["metrics"]["original_first_line"]["patients"] == [1]
    assert report["ambiguities"] == []


def test_main_reports_unavailable_metrics(
    fixture_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code, out, _ = _run(
        capsys,
        "--fixture",
        str(fixture_path),
        "--start",
        "2020-01-01",
        "--end",
        "2020-01-31",
        "--metric",
        "first_line_regimen_holders",
        "--metric",
        "no_such_metric",
    )

    assert exit_code == 0
    metrics = json.loads(out)["metrics"]
    assert metrics["first_line_regimen_holders"]["available"] is False
    assert metrics["first_line_regimen_holders"]["count"] is None
    assert "not registered" in metrics["no_such_metric"]["reason"]


def test_main_applies_demographic_filters(
    fixture_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code, out, _ = _run(
        capsys,
        "--fixture",
        str(fixture_path),
        "--start",
        "2020-01-01",
        "--end",
        "2020-01-31",
        "--metric",
        "enrolled_in_art",
        "--gender",
        "F",
        "--age-category",
        ">=18",
        "--include-patients",
    )

    assert exit_code == 0
    assert json.loads(out)["metrics"]["enrolled_in_art"]["patients"] == [2]


def test_main_lists_metrics(capsys: pytest.CaptureFixture[str], fixture_path: Path) -> None:
    exit_code, out, _ = _run(capsys, "--fixture", str(fixture_path), "--list-metrics")

    assert exit_code == 0
    names = [line.split("\t", 1)[0] for line in out.splitlines()]
    assert "alive_and_on_art" in names
    assert "picked_up_arv_six_months" in names


def test_main_rejects_invalid_age_category(
    fixture_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code, _, err = _run(
        capsys,
        "--fixture",
        str(fixture_path),
        "--start",
        "2020-01-01",
        "--end",
        "2020-01-31",
        "--age-category",
        "adults only",
    )

    assert exit_code == 2
    assert "age_category" in err


def test_main_requires_a_period(fixture_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        run_cohort_report.main(["--fixture", str(fixture_path)])

    assert excinfo.value.code == 2


def test_main_fails_on_unreadable_fixture(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    exit_code, out, err = _run(
        capsys, "--fixture", str(broken), "--start", "2020-01-01", "--end", "2020-01-31"
    )

    assert exit_code == 1
    assert out == ""
    assert "invalid JSON" in err


def test_main_rejects_unknown_log_level(
    fixture_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code, out, err = _run(
        capsys,
        "--fixture",
        str(fixture_path),
        "--start",
        "2020-01-01",
        "--end",
        "2020-01-31",
        "--log-level",
        "chatty",
    )

    assert exit_code == 2
    assert out == ""
    assert "Unknown log level: chatty" in err
    assert "Traceback" not in err
