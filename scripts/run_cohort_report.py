"""Compute cohort metrics for a reporting period and print them as JSON."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Iterable

from pydantic import ValidationError

from services.cohort_analytics.config import SERVICE_NAME, get_settings
from services.cohort_analytics.errors import DataAccessError
from services.cohort_analytics.gateway import InMemoryGateway, SqlAlchemyGateway
from services.cohort_analytics.gateway.interfaces import QueryGateway
from services.cohort_analytics.metrics import MetricRequest, MetricResult
from services.cohort_analytics.service import CohortAnalyticsService
from shared.observability import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Evaluate cohort metrics for a reporting period against a JSON fixture "
            "or the configured clinical database."
        )
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--fixture",
        help="JSON fixture document to evaluate instead of a database (dry run).",
    )
    source.add_argument(
        "--database-url",
        dest="database_url",
        help="SQLAlchemy URL of the clinical database (default: COHORT_DB_URL).",
    )
    parser.add_argument("--start", help="First day of the period (YYYY-MM-DD).")
    parser.add_argument("--end", help="Last day of the period (YYYY-MM-DD).")
    parser.add_argument(
        "--metric",
        dest="metrics",
        action="append",
        help="Metric to evaluate; repeat for several (default: every metric).",
    )
    parser.add_argument("--gender", choices=("M", "F"), help="Restrict to one gender.")
    parser.add_argument(
        "--age-category",
        dest="age_category",
        help="Age comparison such as '>=15' or '<5', evaluated on the last day.",
    )
    parser.add_argument("--drug-regimen", dest="drug_regimen")
    parser.add_argument("--dose-regimen", dest="dose_regimen")
    parser.add_argument(
        "--include-patients",
        action="store_true",
        help="Include patient identifiers alongside each count.",
    )
    parser.add_argument(
        "--list-metrics",
        action="store_true",
        help="Print the available metric names and exit.",
    )
    parser.add_argument("--log-level", dest="log_level", default=None)
    return parser


def _serialize_result(result: MetricResult, *, include_patients: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "available": result.available,
        "count": result.count,
    }
    if result.reason:
        payload["reason"] = result.reason
    if include_patients and result.available:
        payload["patients"] = sorted(result.patients)
    return payload


def _create_gateway(args: argparse.Namespace) -> QueryGateway:
    if args.fixture:
        return InMemoryGateway.from_path(args.fixture)
    settings = get_settings()
    return SqlAlchemyGateway(
        args.database_url or settings.database.url, echo=settings.database.echo
    )


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(None if argv is None else list(argv))

    settings = get_settings()
    try:
        configure_logging(
            service_name=SERVICE_NAME,
            level=args.log_level or settings.logging.level,
            json_logs=settings.logging.json_logs,
        )
    except ValueError as exc:
        print(f"{parser.prog}: error: {exc}", file=sys.stderr)
        return 2

    try:
        gateway = _create_gateway(args)
    except DataAccessError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    service = CohortAnalyticsService(gateway, settings)

    if args.list_metrics:
        with service.report() as report:
            for name in report.catalogue.names():
                print(f"{name}\t{report.catalogue.describe(name)}")
        return 0

    if not args.start or not args.end:
        parser.error("--start and --end are required unless --list-metrics is given")

    try:
        request = MetricRequest(
            start=args.start,
            end=args.end,
            gender=args.gender,
            age_category=args.age_category,
            drug_regimen=args.drug_regimen,
            dose_regimen=args.dose_regimen,
        )
    except ValidationError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    try:
        with service.report() as report:
            results = report.catalogue.evaluate_all(request, args.metrics)
            output = {
                "report_id": report.report_id,
                "period": {"start": str(request.start), "end": str(request.end)},
                "metrics": {
                    name: _serialize_result(result, include_patients=args.include_patients)
                    for name, result in results.items()
                },
                "ambiguities": [
                    {
                        "patient_id": ambiguity.patient_id,
                        "reason": ambiguity.reason,
                        "cohort": ambiguity.cohort,
                    }
                    for ambiguity in report.ambiguities
                ],
            }
    except DataAccessError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
