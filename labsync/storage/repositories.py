# labsync/storage/repositories.py
import json
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import case, func, insert, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from labsync.commons.errors import NotFoundError
from labsync.commons.models import (
    Address,
    Measurement,
    NewPatient,
    NewTestResult,
    Patient,
    PersonName,
    Physicians,
    ReferenceRange,
    ResultFlags,
    ResultStatus,
    Sex,
    TestResult,
)
from labsync.storage.schema import patients, test_results
from labsync.storage.transactions import UnitOfWork


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class _Repository:
    """`executor` es una UnitOfWork (escritura) o una Connection (lectura)."""

    table = None

    def __init__(self, executor):
        self.executor = executor

    def _execute(self, statement, description: str):
        # UnitOfWork.execute acepta description; Connection.execute no
        if isinstance(self.executor, UnitOfWork):
            return self.executor.execute(statement, description=description)
        return self.executor.execute(statement)

    def count(self) -> int:
        return self._execute(select(func.count()).select_from(self.table), "count").scalar_one()

    def exists(self, entity_id: str) -> bool:
        stmt = select(self.table.c.id).where(self.table.c.id == entity_id).limit(1)
        return self._execute(stmt, "exists").first() is not None


class PatientRepository(_Repository):
    table = patients

    def find_by_id(self, patient_id: str) -> Optional[Patient]:
        row = self._execute(select(patients).where(patients.c.id == patient_id), "patient by id").first()
        return self._to_entity(row) if row else None

    def search_by_name(
        self, last_name: Optional[str] = None, first_name: Optional[str] = None, limit: int = 100
    ) -> List[Patient]:
        # instr(): substring sensible a mayúsculas (LIKE en SQLite no lo es)
        stmt = select(patients)
        if last_name:
            stmt = stmt.where(func.instr(patients.c.last_name, last_name) > 0)
        if first_name:
            stmt = stmt.where(func.instr(patients.c.first_name, first_name) > 0)
        stmt = stmt.order_by(patients.c.last_name, patients.c.first_name).limit(limit)
        return [self._to_entity(r) for r in self._execute(stmt, "patient search")]

    def create(self, new: NewPatient) -> Patient:
        self._execute(insert(patients).values(**self._to_row(new)), "patient insert")
        return self.find_by_id(new.id)

    def insert_if_absent(self, new: NewPatient) -> Patient:
        """INSERT OR IGNORE por id y relectura; cierra la carrera find-or-create."""
        stmt = (
            sqlite_insert(patients)
            .values(**self._to_row(new))
            .on_conflict_do_nothing(index_elements=[patients.c.id])
        )
        self._execute(stmt, "patient insert-or-ignore")
        patient = self.find_by_id(new.id)
        if patient is None:
            raise NotFoundError(f"Patient {new.id} not found after insert")
        return patient

    @staticmethod
    def _to_row(new: NewPatient) -> dict:
        now = _now()
        address = new.address or Address()
        physicians = new.physicians or Physicians()
        return {
            "id": new.id,
            "last_name": new.name.last_name or None,
            "first_name": new.name.first_name or None,
            "middle_name": new.name.middle_name or None,
            "title": new.name.title or None,
            "birth_date": new.birth_date,
            "sex": new.sex.code,
            "street": address.street,
            "city": address.city,
            "state": address.state,
            "zip": address.zip,
            "country_code": address.country_code,
            "telephone": json.dumps(list(new.telephone)),
            "ordering_physician": physicians.ordering,
            "attending_physician": physicians.attending,
            "referring_physician": physicians.referring,
            "height_value": new.height.value if new.height else None,
            "height_unit": new.height.unit if new.height else None,
            "weight_value": new.weight.value if new.weight else None,
            "weight_unit": new.weight.unit if new.weight else None,
            "created_at": now,
            "updated_at": now,
        }

    @staticmethod
    def _to_entity(row) -> Patient:
        m = row._mapping
        address = None
        if any(m[k] for k in ("street", "city", "state", "zip", "country_code")):
            address = Address(m["street"], m["city"], m["state"], m["zip"], m["country_code"])
        physicians = None
        if any(m[k] for k in ("ordering_physician", "attending_physician", "referring_physician")):
            physicians = Physicians(
                m["ordering_physician"], m["attending_physician"], m["referring_physician"]
            )
        height = None
        if m["height_value"] is not None and m["height_unit"]:
            height = Measurement(m["height_value"], m["height_unit"])
        weight = None
        if m["weight_value"] is not None and m["weight_unit"]:
            weight = Measurement(m["weight_value"], m["weight_unit"])
        return Patient(
            id=m["id"],
            name=PersonName(m["first_name"], m["last_name"], m["middle_name"], m["title"]),
            sex=Sex.from_code(m["sex"]),
            birth_date=m["birth_date"],
            address=address,
            telephone=json.loads(m["telephone"]) if m["telephone"] else [],
            physicians=physicians,
            height=height,
            weight=weight,
            created_at=m["created_at"],
            updated_at=m["updated_at"],
        )


class TestResultRepository(_Repository):
    __test__ = False

    table = test_results

    def insert(self, new: NewTestResult) -> str:
        result_id = str(uuid.uuid4())
        now = _now()
        values = {
            "id": result_id,
            "test_id": new.test_id,
            "sample_id": new.sample_id,
            "value": new.value,
            "units": new.units,
            "reference_range_lower": new.reference_range.lower_limit,
            "reference_range_upper": new.reference_range.upper_limit,
            "abnormal_flag": new.flags.abnormal_flag,
            "nature_of_abnormality": new.flags.nature_of_abnormality,
            "status": new.status.code,
            "sequence_number": new.sequence_number,
            "instrument": new.instrument,
            "completed_date_time": new.completed_date_time,
            "analyzer_id": new.analyzer_id,
            "patient_id": new.patient_id,
            "created_at": now,
            "updated_at": now,
        }
        self._execute(insert(test_results).values(**values), f"test result insert {new.test_id}")
        return result_id

    def find_by_id(self, result_id: str) -> Optional[TestResult]:
        row = self._execute(
            select(test_results).where(test_results.c.id == result_id), "result by id"
        ).first()
        return self._to_entity(row) if row else None

    def find_by_patient(self, patient_id: str) -> List[TestResult]:
        stmt = (
            select(test_results)
            .where(test_results.c.patient_id == patient_id)
            .order_by(test_results.c.created_at, test_results.c.sequence_number)
        )
        return [self._to_entity(r) for r in self._execute(stmt, "results by patient")]

    def find_by_sample_id(self, sample_id: str) -> List[TestResult]:
        stmt = (
            select(test_results)
            .where(test_results.c.sample_id == sample_id)
            .order_by(test_results.c.sequence_number, test_results.c.completed_date_time.desc())
        )
        return [self._to_entity(r) for r in self._execute(stmt, "results by sample")]

    def statistics(self) -> dict:
        status = test_results.c.status
        stmt = select(
            func.count().label("total"),
            func.coalesce(func.sum(case((status == "F", 1), else_=0)), 0).label("final"),
            func.coalesce(func.sum(case((status == "P", 1), else_=0)), 0).label("preliminary"),
            func.coalesce(func.sum(case((status == "C", 1), else_=0)), 0).label("correction"),
            func.coalesce(
                func.sum(case((test_results.c.abnormal_flag.is_not(None), 1), else_=0)), 0
            ).label("abnormal"),
        ).select_from(test_results)
        return dict(self._execute(stmt, "statistics").one()._mapping)

    @staticmethod
    def _to_entity(row) -> TestResult:
        m = row._mapping
        return TestResult(
            id=m["id"],
            test_id=m["test_id"],
            sample_id=m["sample_id"],
            value=m["value"],
            patient_id=m["patient_id"],
            status=ResultStatus.from_code(m["status"]),
            units=m["units"],
            reference_range=ReferenceRange(m["reference_range_lower"], m["reference_range_upper"]),
            flags=ResultFlags(m["abnormal_flag"], m["nature_of_abnormality"]),
            completed_date_time=m["completed_date_time"],
            sequence_number=m["sequence_number"],
            instrument=m["instrument"],
            analyzer_id=m["analyzer_id"],
            created_at=m["created_at"],
            updated_at=m["updated_at"],
        )
