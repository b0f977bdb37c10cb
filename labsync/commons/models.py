# ===============================
# File: labsync/commons/models.py
# ===============================
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Optional


class Sex(str, Enum):
    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"

    @property
    def code(self) -> str:
        return {"Male": "M", "Female": "F", "Other": "U"}[self.value]

    @classmethod
    def from_code(cls, code: Optional[str]) -> "Sex":
        return {"M": cls.MALE, "F": cls.FEMALE}.get(code or "", cls.OTHER)


class ResultStatus(str, Enum):
    PRELIMINARY = "Preliminary"
    FINAL = "Final"
    CORRECTION = "Correction"

    @property
    def code(self) -> str:
        return self.value[0]  # P / F / C

    @classmethod
    def from_code(cls, code: Optional[str]) -> "ResultStatus":
        return {"P": cls.PRELIMINARY, "C": cls.CORRECTION}.get(code or "", cls.FINAL)


@dataclass(frozen=True)
class ReferenceRange:
    lower_limit: Optional[float] = None
    upper_limit: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return self.lower_limit is None and self.upper_limit is None


@dataclass(frozen=True)
class ResultFlags:
    abnormal_flag: Optional[str] = None
    nature_of_abnormality: Optional[str] = None


@dataclass(frozen=True)
class Measurement:
    value: float
    unit: str


@dataclass
class PersonName:
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    middle_name: Optional[str] = None
    title: Optional[str] = None

    @property
    def display(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


@dataclass
class Address:
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country_code: Optional[str] = None


@dataclass
class Physicians:
    ordering: Optional[str] = None
    attending: Optional[str] = None
    referring: Optional[str] = None


@dataclass
class NewPatient:
    """Paciente ya normalizado, listo para insertar."""

    id: str
    name: PersonName
    sex: Sex = Sex.OTHER
    birth_date: Optional[date] = None
    address: Optional[Address] = None
    telephone: List[str] = field(default_factory=list)
    physicians: Optional[Physicians] = None
    height: Optional[Measurement] = None
    weight: Optional[Measurement] = None


@dataclass
class Patient(NewPatient):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class NewTestResult:
    test_id: str
    sample_id: str
    value: str
    patient_id: str
    status: ResultStatus = ResultStatus.FINAL
    units: Optional[str] = None
    reference_range: ReferenceRange = ReferenceRange()
    flags: ResultFlags = ResultFlags()
    completed_date_time: Optional[datetime] = None
    sequence_number: int = 1
    instrument: Optional[str] = None
    analyzer_id: Optional[str] = None


@dataclass
class TestResult(NewTestResult):
    __test__ = False

    id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
