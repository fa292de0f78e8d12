"""SQLAlchemy backed gateway over the host platform's clinical schema."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Collection, Iterator, Sequence, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import Select

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
from shared.observability import get_logger

logger = get_logger(__name__)

_RowModel = TypeVar("_RowModel", bound=BaseModel)

metadata = MetaData()

person = Table(
    "person",
    metadata,
    Column("person_id", Integer, primary_key=True),
    Column("gender", String(50)),
    Column("birthdate", Date),
    Column("dead", Boolean, nullable=False, default=False),
    Column("death_date", DateTime),
    Column("voided", Boolean, nullable=False, default=False),
)

program = Table(
    "program",
    metadata,
    Column("program_id", Integer, primary_key=True),
    Column("uuid", String(38), nullable=False, unique=True),
)

patient_program = Table(
    "patient_program",
    metadata,
    Column("patient_program_id", Integer, primary_key=True),
    Column("patient_id", Integer, nullable=False),
    Column("program_id", Integer, ForeignKey("program.program_id"), nullable=False),
    Column("date_enrolled", DateTime, nullable=False),
    Column("date_completed", DateTime),
    Column("voided", Boolean, nullable=False, default=False),
)

concept = Table(
    "concept",
    metadata,
    Column("concept_id", Integer, primary_key=True),
    Column("uuid", String(38), nullable=False, unique=True),
)

obs = Table(
    "obs",
    metadata,
    Column("obs_id", Integer, primary_key=True),
    Column("person_id", Integer, nullable=False),
    Column("concept_id", Integer, ForeignKey("concept.concept_id"), nullable=False),
    Column("value_coded", Integer, ForeignKey("concept.concept_id")),
    Column("value_numeric", Float),
    Column("value_text", String(1000)),
    Column("obs_datetime", DateTime, nullable=False),
    Column("voided", Boolean, nullable=False, default=False),
)

visit = Table(
    "visit",
    metadata,
    Column("visit_id", Integer, primary_key=True),
    Column("patient_id", Integer, nullable=False),
    Column("date_started", DateTime, nullable=False),
    Column("date_stopped", DateTime),
    Column("voided", Boolean, nullable=False, default=False),
)

encounter_type = Table(
    "encounter_type",
    metadata,
    Column("encounter_type_id", Integer, primary_key=True),
    Column("name", String(50), nullable=False),
)

encounter = Table(
    "encounter",
    metadata,
    Column("encounter_id", Integer, primary_key=True),
    Column("patient_id", Integer, nullable=False),
    Column(
        "encounter_type",
        Integer,
        ForeignKey("encounter_type.encounter_type_id"),
        nullable=False,
    ),
    Column("encounter_datetime", DateTime, nullable=False),
    Column("voided", Boolean, nullable=False, default=False),
)

drug_order_processed = Table(
    "drug_order_processed",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("patient_id", Integer, nullable=False),
    Column("drug_order_id", Integer),
    Column("visit_id", Integer),
    Column("start_date", DateTime, nullable=False),
    Column("discontinued_date", DateTime),
    Column("regimen_change_type", String(50)),
    Column("type_of_regimen", String(100)),
    Column("drug_regimen", String(255)),
    Column("dose_regimen", String(255)),
    Column("created_date", DateTime, nullable=False),
    Column("processed_status", Boolean, nullable=False, default=False),
)

drug_obs_processed = Table(
    "drug_obs_processed",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("patient_id", Integer, nullable=False),
    Column("obs_id", Integer),
    Column("processed_date", DateTime, nullable=False),
    Column("drug_regimen", String(255)),
    Column("dose_regimen", String(255)),
    Column("created_date", DateTime, nullable=False),
)

_question = concept.alias("question")
_answer = concept.alias("answer")

_ENROLLMENT_COLUMNS = (
    patient_program.c.patient_program_id.label("enrollment_id"),
    patient_program.c.patient_id,
    program.c.uuid.label("program_uuid"),
    patient_program.c.date_enrolled,
    patient_program.c.date_completed,
    patient_program.c.voided,
)

_PATIENT_COLUMNS = (
    person.c.person_id.label("patient_id"),
    person.c.gender,
    person.c.birthdate,
    person.c.death_date,
    person.c.dead,
)

_VISIT_COLUMNS = (
    visit.c.visit_id,
    visit.c.patient_id,
    visit.c.date_started.label("start_datetime"),
    visit.c.date_stopped.label("stop_datetime"),
    visit.c.voided,
)


_ENCOUNTER_COLUMNS = (
    encounter.c.encounter_id,
    encounter.c.patient_id,
    encounter_type.c.name.label("encounter_type"),
    encounter.c.encounter_datetime,
    encounter.c.voided,
)


def _between(column: Any, window: DateRange) -> Any:
    return column.between(window.start, window.end)


def _enum_values(members: Collection[Any]) -> list[str]:
    return [getattr(member, "value", member) for member in members]


def _order_values(record: DrugOrderProcessed) -> dict[str, Any]:
    values = record.model_dump(mode="python")
    for key in ("regimen_change_type", "type_of_regimen"):
        if values[key] is not None:
            values[key] = getattr(values[key], "value", values[key])
    return values


class SqlAlchemyGateway:
    """Query gateway issuing parameterised SQLAlchemy Core statements."""

    def __init__(
        self,
        database_url: str | None = None,
        *,
        engine: Engine | None = None,
        echo: bool = False,
    ) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("Either database_url or engine must be provided.")
            engine = create_engine(database_url, echo=echo)
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        """Create the tables this gateway reads and writes, if missing."""

        with self._guard("create_schema"):
            metadata.create_all(self._engine)

    def close(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (SQLAlchemyError, ValidationError) as exc:
            logger.error("gateway_operation_failed", operation=operation, error=str(exc))
            raise DataAccessError(
                f"Clinical data store operation '{operation}' failed.",
                operation=operation,
                original=exc,
            ) from exc

    def _fetch(
        self, operation: str, statement: Select, model: type[_RowModel]
    ) -> list[_RowModel]:
        with self._guard(operation):
            with self._engine.connect() as connection:
                rows = connection.execute(statement).mappings().all()
            # A row the models cannot represent is a store problem too.
            records = [model.model_validate(dict(row)) for row in rows]
        logger.debug("gateway_query", operation=operation, rows=len(records))
        return records

    def _fetch_one(
        self, operation: str, statement: Select, model: type[_RowModel]
    ) -> _RowModel | None:
        rows = self._fetch(operation, statement.limit(1), model)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Program enrollments
    # ------------------------------------------------------------------

    def _enrollment_query(self, program_uuid: str) -> Select:
        return (
            select(*_ENROLLMENT_COLUMNS)
            .select_from(patient_program.join(program))
            .where(program.c.uuid == program_uuid, patient_program.c.voided.is_(False))
            .order_by(patient_program.c.patient_program_id)
        )

    def find_program_enrollments(
        self, program_uuid: str, enrolled: DateRange
    ) -> list[ProgramEnrollment]:
        statement = self._enrollment_query(program_uuid).where(
            _between(patient_program.c.date_enrolled, enrolled)
        )
        return self._fetch("find_program_enrollments", statement, ProgramEnrollment)

    def find_program_enrollments_completed(
        self, program_uuid: str, completed: DateRange
    ) -> list[ProgramEnrollment]:
        statement = self._enrollment_query(program_uuid).where(
            _between(patient_program.c.date_completed, completed)
        )
        return self._fetch(
            "find_program_enrollments_completed", statement, ProgramEnrollment
        )

    def find_active_program_enrollments(
        self, program_uuid: str, patient_ids: Collection[int]
    ) -> list[ProgramEnrollment]:
        if not patient_ids:
            return []
        statement = self._enrollment_query(program_uuid).where(
            patient_program.c.date_completed.is_(None),
            patient_program.c.patient_id.in_(list(patient_ids)),
        )
        return self._fetch(
            "find_active_program_enrollments", statement, ProgramEnrollment
        )

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
        statement = (
            select(
                obs.c.obs_id,
                obs.c.person_id,
                _question.c.uuid.label("concept"),
                _answer.c.uuid.label("value_coded"),
                obs.c.value_numeric,
                obs.c.value_text,
                obs.c.obs_datetime,
                obs.c.voided,
            )
            .select_from(
                obs.join(_question, obs.c.concept_id == _question.c.concept_id).outerjoin(
                    _answer, obs.c.value_coded == _answer.c.concept_id
                )
            )
            .where(_between(obs.c.obs_datetime, window))
            .order_by(obs.c.obs_datetime, obs.c.obs_id)
        )
        if not include_voided:
            statement = statement.where(obs.c.voided.is_(False))
        if value_coded is not None:
            statement = statement.where(_answer.c.uuid.in_(list(value_coded)))
        if concepts is not None:
            statement = statement.where(_question.c.uuid.in_(list(concepts)))
        if person_id is not None:
            statement = statement.where(obs.c.person_id == person_id)
        return self._fetch("find_observations", statement, Observation)

    def find_deceased_patients(self, window: DateRange) -> list[Patient]:
        statement = select(*_PATIENT_COLUMNS).where(
            person.c.dead.is_(True),
            person.c.voided.is_(False),
            _between(person.c.death_date, window),
        )
        return self._fetch("find_deceased_patients", statement, Patient)

    def find_patients(self, patient_ids: Collection[int]) -> list[Patient]:
        if not patient_ids:
            return []
        statement = select(*_PATIENT_COLUMNS).where(
            person.c.person_id.in_(list(patient_ids)), person.c.voided.is_(False)
        )
        return self._fetch("find_patients", statement, Patient)

    # ------------------------------------------------------------------
    # Visits
    # ------------------------------------------------------------------

    def find_visits_started(self, window: DateRange) -> list[Visit]:
        statement = (
            select(*_VISIT_COLUMNS)
            .where(visit.c.voided.is_(False), _between(visit.c.date_started, window))
            .order_by(visit.c.date_started, visit.c.visit_id)
        )
        return self._fetch("find_visits_started", statement, Visit)

    def find_visits_by_patient(self, patient_id: int) -> list[Visit]:
        statement = (
            select(*_VISIT_COLUMNS)
            .where(visit.c.patient_id == patient_id, visit.c.voided.is_(False))
            .order_by(visit.c.date_started, visit.c.visit_id)
        )
        return self._fetch("find_visits_by_patient", statement, Visit)

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
        statement = (
            select(*_ENCOUNTER_COLUMNS)
            .select_from(encounter.join(encounter_type))
            .where(
                encounter.c.voided.is_(False),
                _between(encounter.c.encounter_datetime, window),
            )
            .order_by(encounter.c.encounter_datetime, encounter.c.encounter_id)
        )
        if encounter_types is not None:
            statement = statement.where(encounter_type.c.name.in_(list(encounter_types)))
        if patient_ids is not None:
            statement = statement.where(encounter.c.patient_id.in_(list(patient_ids)))
        return self._fetch("find_encounters", statement, Encounter)

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
        table = drug_order_processed
        statement = select(table).where(_between(table.c.start_date, window))
        if change_types is not None:
            statement = statement.where(
                table.c.regimen_change_type.in_(_enum_values(change_types))
            )
        if regimen_types is not None:
            statement = statement.where(
                table.c.type_of_regimen.in_(_enum_values(regimen_types))
            )
        if drug_regimen is not None:
            statement = statement.where(table.c.drug_regimen == drug_regimen)
        if dose_regimen is not None:
            statement = statement.where(table.c.dose_regimen == dose_regimen)
        if active_only:
            statement = statement.where(table.c.discontinued_date.is_(None))
        if processed_only:
            statement = statement.where(table.c.processed_status.is_(True))
        return self._fetch("find_drug_orders_processed", statement, DrugOrderProcessed)

    def find_drug_orders_processed_by_visit(self, visit_id: int) -> list[DrugOrderProcessed]:
        statement = select(drug_order_processed).where(
            drug_order_processed.c.visit_id == visit_id
        )
        return self._fetch(
            "find_drug_orders_processed_by_visit", statement, DrugOrderProcessed
        )

    def find_drug_order_processed_by_patient(
        self, patient_id: int
    ) -> list[DrugOrderProcessed]:
        statement = select(drug_order_processed).where(
            drug_order_processed.c.patient_id == patient_id
        )
        return self._fetch(
            "find_drug_order_processed_by_patient", statement, DrugOrderProcessed
        )

    def _latest_for_patient(self, patient_id: int) -> Select:
        table = drug_order_processed
        return (
            select(table)
            .where(table.c.patient_id == patient_id)
            .order_by(table.c.created_date.desc(), table.c.id.desc())
        )

    def find_last_drug_order_processed_by_patient(
        self, patient_id: int
    ) -> DrugOrderProcessed | None:
        return self._fetch_one(
            "find_last_drug_order_processed_by_patient",
            self._latest_for_patient(patient_id),
            DrugOrderProcessed,
        )

    def find_last_active_drug_order_processed_by_patient(
        self, patient_id: int
    ) -> DrugOrderProcessed | None:
        statement = self._latest_for_patient(patient_id).where(
            drug_order_processed.c.discontinued_date.is_(None)
        )
        return self._fetch_one(
            "find_last_active_drug_order_processed_by_patient",
            statement,
            DrugOrderProcessed,
        )

    # ------------------------------------------------------------------
    # Write-back
    # ------------------------------------------------------------------

    def _upsert(
        self, connection: Connection, table: Table, values: dict[str, Any]
    ) -> int:
        record_id = values.pop("id", None)
        if record_id is not None:
            exists = connection.execute(
                select(table.c.id).where(table.c.id == record_id)
            ).first()
            if exists is not None:
                connection.execute(
                    update(table).where(table.c.id == record_id).values(**values)
                )
                return record_id
            values["id"] = record_id
        result = connection.execute(insert(table).values(**values))
        return result.inserted_primary_key[0]

    def save_drug_order_processed(self, record: DrugOrderProcessed) -> DrugOrderProcessed:
        with self._guard("save_drug_order_processed"):
            with self._engine.begin() as connection:
                record_id = self._upsert(
                    connection, drug_order_processed, _order_values(record)
                )
        return record.model_copy(update={"id": record_id})

    def save_regimen_change(
        self, record: DrugOrderProcessed
    ) -> tuple[DrugOrderProcessed, DrugOrderProcessed | None]:
        table = drug_order_processed
        superseded: DrugOrderProcessed | None = None
        with self._guard("save_regimen_change"):
            with self._engine.begin() as connection:
                current = (
                    connection.execute(
                        self._latest_for_patient(record.patient_id)
                        .where(table.c.discontinued_date.is_(None))
                        .limit(1)
                    )
                    .mappings()
                    .first()
                )
                if current is not None and current["id"] != record.id:
                    connection.execute(
                        update(table)
                        .where(table.c.id == current["id"])
                        .values(discontinued_date=record.start_date)
                    )
                    superseded = DrugOrderProcessed.model_validate(
                        {**current, "discontinued_date": record.start_date}
                    )
                record_id = self._upsert(connection, table, _order_values(record))
        return record.model_copy(update={"id": record_id}), superseded

    def save_drug_obs_processed(self, record: DrugObsProcessed) -> DrugObsProcessed:
        values = record.model_dump(mode="python")
        with self._guard("save_drug_obs_processed"):
            with self._engine.begin() as connection:
                record_id = self._upsert(connection, drug_obs_processed, values)
        return record.model_copy(update={"id": record_id})

    def load_rows(self, table: Table, rows: Sequence[dict[str, Any]]) -> None:
        """Bulk insert raw ``rows`` into ``table``; used to seed fixtures.

        Rows may omit nullable columns; every row is padded to the union of
        keys so the batch compiles to a single INSERT.
        """

        if not rows:
            return
        keys = list(dict.fromkeys(key for row in rows for key in row))
        rows = [{key: row.get(key) for key in keys} for row in rows]
        with self._guard(f"load_rows:{table.name}"):
            with self._engine.begin() as connection:
                connection.execute(insert(table), list(rows))


__all__ = [
    "SqlAlchemyGateway",
    "concept",
    "drug_obs_processed",
    "drug_order_processed",
    "encounter",
    "encounter_type",
    "metadata",
    "obs",
    "patient_program",
    "person",
    "program",
    "visit",
]
