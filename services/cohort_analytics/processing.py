"""Write-back of processed regimen records."""

from __future__ import annotations

from services.cohort_analytics.gateway.interfaces import QueryGateway
from services.cohort_analytics.models import DrugObsProcessed, DrugOrderProcessed
from shared.observability import get_logger

logger = get_logger(__name__)


class RegimenLedger:
    """Maintains the processed drug-order lineage of each patient.

    A regimen change and the discontinuation it implies are written in one
    gateway transaction. Concurrent writers for the same patient are left to
    the store's own concurrency control.
    """

    def __init__(self, gateway: QueryGateway) -> None:
        self._gateway = gateway

    def record_regimen_change(self, record: DrugOrderProcessed) -> DrugOrderProcessed:
        """Persist ``record`` as the patient's new current regimen.

        The previously current record, if any, is discontinued as of the new
        record's start date. Either both writes land or neither does.
        """

        stored, superseded = self._gateway.save_regimen_change(record)
        if superseded is not None:
            logger.info(
                "regimen_superseded",
                patient_id=record.patient_id,
                superseded_id=superseded.id,
                change_type=str(record.regimen_change_type or ""),
            )
        logger.info(
            "regimen_recorded",
            patient_id=stored.patient_id,
            record_id=stored.id,
            change_type=str(stored.regimen_change_type or ""),
        )
        return stored

    def record_drug_obs(self, record: DrugObsProcessed) -> DrugObsProcessed:
        stored = self._gateway.save_drug_obs_processed(record)
        logger.info(
            "drug_obs_recorded",
            patient_id=stored.patient_id,
            record_id=stored.id,
        )
        return stored


__all__ = ["RegimenLedger"]
