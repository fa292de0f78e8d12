from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import text

from services.cohort_analytics.errors import DataAccessError
from services.cohort_analytics.gateway import InMemoryGateway, SqlAlchemyGateway
from services.cohort_analytics.models import DrugObsProcessed, DrugOrderProcessed
from services.cohort_analytics.processing import RegimenLedger

from tests.services.cohort_analytics.builders import (
    FIRST_LINE,
    SECOND_LINE,
    START,
    SWITCH,
    order,
)


def test_recording_a_change_discontinues_the_current_regimen() -> None:
    current = order(1, START, FIRST_LINE, datetime(2019, 5, 1))
    gateway = InMemoryGateway(drug_orders=[current])
    ledger = RegimenLedger(gateway)

    stored = ledger.record_regimen_change(
        DrugOrderProcessed(
            patient_id=1,
            start_date=datetime(2020, 1, 10),
            regimen_change_type=SWITCH,
            type_of_regimen=SECOND_LINE,
            drug_regimen="AZT/3TC/LPV/r",
            created_date=datetime(2020, 1, 10),
        )
    )

    history = {record.id: record for record in gateway.find_drug_order_processed_by_patient(1)}
    assert stored.id is not None and stored.id != current.id
    assert history[current.id].discontinued_date == datetime(2020, 1, 10)
    assert history[stored.id].discontinued_date is None
    assert gateway.find_last_active_drug_order_processed_by_patient(1).id == stored.id


def test_first_regimen_is_saved_without_touching_other_patients() -> None:
    other = order(2, START, FIRST_LINE, datetime(2019, 5, 1))
    gateway = InMemoryGateway(drug_orders=[other])
    ledger = RegimenLedger(gateway)

    ledger.record_regimen_change(
        DrugOrderProcessed(
            patient_id=1,
            start_date=datetime(2020, 1, 10),
            regimen_change_type=START,
            type_of_regimen=FIRST_LINE,
        )
    )

    assert len(gateway.find_drug_order_processed_by_patient(1)) == 1
    assert gateway.find_drug_order_processed_by_patient(2)[0].discontinued_date is None


def test_resaving_the_current_record_does_not_discontinue_it() -> None:
    current = order(1, START, FIRST_LINE, datetime(2019, 5, 1))
    gateway = InMemoryGateway(drug_orders=[current])
    ledger = RegimenLedger(gateway)

    ledger.record_regimen_change(current.model_copy(update={"processed_status": True}))

    (stored,) = gateway.find_drug_order_processed_by_patient(1)
    assert stored.processed_status is True
    assert stored.discontinued_date is None


def test_recording_drug_obs_assigns_an_identifier() -> None:
    gateway = InMemoryGateway()
    ledger = RegimenLedger(gateway)

    stored = ledger.record_drug_obs(
        DrugObsProcessed(patient_id=1, processed_date=datetime(2020, 1, 3), drug_regimen="TDF/3TC/EFV")
    )

    assert stored.id == 1
    assert gateway.drug_obs_processed == [stored]


def test_rejected_change_keeps_the_previous_regimen_current(tmp_path) -> None:
    gateway = SqlAlchemyGateway(f"sqlite:///{tmp_path / 'ledger.db'}")
    gateway.create_schema()
    ledger = RegimenLedger(gateway)
    current = ledger.record_regimen_change(
        DrugOrderProcessed(
            patient_id=1,
            start_date=datetime(2019, 5, 1),
            regimen_change_type=START,
            type_of_regimen=FIRST_LINE,
            drug_regimen="TDF/3TC/EFV",
            created_date=datetime(2019, 5, 1),
        )
    )
    with gateway.engine.begin() as connection:
        connection.execute(
            text(
                "CREATE TRIGGER reject_switch BEFORE INSERT ON drug_order_processed "
                "WHEN NEW.regimen_change_type = 'Switch' "
                "BEGIN SELECT RAISE(ABORT, 'switch rejected'); END"
            )
        )

    with pytest.raises(DataAccessError):
        ledger.record_regimen_change(
            DrugOrderProcessed(
                patient_id=1,
                start_date=datetime(2020, 1, 10),
                regimen_change_type=SWITCH,
                type_of_regimen=SECOND_LINE,
                drug_regimen="AZT/3TC/LPV/r",
                created_date=datetime(2020, 1, 10),
            )
        )

    active = gateway.find_last_active_drug_order_processed_by_patient(1)
    assert active is not None and active.id == current.id
    assert active.discontinued_date is None
    gateway.close()
