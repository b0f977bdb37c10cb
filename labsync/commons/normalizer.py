"""Normalización de campos crudos del analizador a valores de dominio.

Todas las funciones son totales: cualquier entrada (vacía, centinela "N",
basura) produce un valor o None, nunca una excepción.
"""
import math
import re
import uuid
from datetime import date, datetime, timezone
from typing import Iterable, Optional, Tuple

from labsync.commons.logger import logger
from labsync.commons.models import (
    Address,
    Measurement,
    NewPatient,
    NewTestResult,
    PersonName,
    Physicians,
    ReferenceRange,
    ResultFlags,
    ResultStatus,
    Sex,
)
from labsync.commons.types import PatientPayload, TestResultPayload

SENTINELS = ("", "N")
ABNORMAL_FLAGS = ("H", "L", "HH", "LL", "N")
MIN_YEAR = 1900
FUTURE_YEARS = 10

# Formatos compactos HL7/ASTM (TS): YYYYMMDD[HHMM[SS]], elegidos por longitud
_COMPACT_FORMATS = {8: "%Y%m%d", 12: "%Y%m%d%H%M", 14: "%Y%m%d%H%M%S"}
_COMPACT_RE = re.compile(r"^\d{8}(\d{4}(\d{2})?)?$")


def _is_sentinel(value: Optional[str]) -> bool:
    return value is None or value.strip() in SENTINELS


def _year_in_range(year: int) -> bool:
    return MIN_YEAR <= year <= datetime.now().year + FUTURE_YEARS


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if _is_sentinel(value):
        return None
    raw = value.strip()
    parsed = None
    if _COMPACT_RE.match(raw):
        try:
            parsed = datetime.strptime(raw, _COMPACT_FORMATS[len(raw)])
        except ValueError:
            parsed = None
    else:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
    if parsed is None:
        logger.warning(f"Fecha inválida: {value!r}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    if not _year_in_range(parsed.year):
        logger.warning(f"Fecha fuera de rango razonable: {value!r}")
        return None
    return parsed


def parse_date(value: Optional[str]) -> Optional[date]:
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None


# alias explícito para el campo de nacimiento
parse_birth_date = parse_date


def map_sex(value: Optional[str]) -> Sex:
    normalized = (value or "").strip().lower()
    if normalized in ("m", "male"):
        return Sex.MALE
    if normalized in ("f", "female"):
        return Sex.FEMALE
    return Sex.OTHER


def map_status(value: Optional[str]) -> ResultStatus:
    normalized = (value or "").strip().lower()
    if normalized in ("c", "correction"):
        return ResultStatus.CORRECTION
    if normalized in ("p", "preliminary"):
        return ResultStatus.PRELIMINARY
    return ResultStatus.FINAL


def parse_numeric(field_name: str, value: Optional[str]) -> Optional[float]:
    if _is_sentinel(value):
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        logger.warning(f"Valor numérico inválido en {field_name}: {value!r}")
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


def clean_string(field_name: str, value: Optional[str], extra_sentinels: Tuple[str, ...] = ()) -> Optional[str]:
    if _is_sentinel(value):
        return None
    cleaned = value.strip()
    if cleaned in extra_sentinels:
        logger.debug(f"{field_name}: centinela {cleaned!r} tratado como ausente")
        return None
    return cleaned


def _to_float(text: str) -> Optional[float]:
    text = text.strip()
    if not text:
        return None
    try:
        parsed = float(text)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def parse_reference_range(value: Optional[str]) -> ReferenceRange:
    """
    Formatos reconocidos:
      - "lo-hi"  -> ambos límites (cada lado opcional)
      - ">lo"    -> solo inferior
      - "<hi"    -> solo superior
      - "n"      -> inferior = superior = n
    Cualquier otra cosa -> rango vacío.
    """
    raw = (value or "").strip()
    if not raw:
        return ReferenceRange()

    # ">-5" / "<-2": el signo del límite no es separador
    if raw.startswith(">"):
        lower = _to_float(raw[1:])
        return ReferenceRange(lower_limit=lower) if lower is not None else ReferenceRange()

    if raw.startswith("<"):
        upper = _to_float(raw[1:])
        return ReferenceRange(upper_limit=upper) if upper is not None else ReferenceRange()

    if "-" in raw:
        lower_txt, upper_txt = raw.split("-", 1)
        lower, upper = _to_float(lower_txt), _to_float(upper_txt)
        # lado presente pero no numérico -> rango no interpretable
        if (lower_txt.strip() and lower is None) or (upper_txt.strip() and upper is None):
            return ReferenceRange()
        return ReferenceRange(lower_limit=lower, upper_limit=upper)

    target = _to_float(raw)
    if target is None:
        return ReferenceRange()
    return ReferenceRange(lower_limit=target, upper_limit=target)


def split_flags(tokens: Optional[Iterable[str]]) -> ResultFlags:
    abnormal = None
    nature = None
    for token in tokens or []:
        if token is None or not token.strip():
            continue
        if token in ABNORMAL_FLAGS:
            abnormal = abnormal or token
        else:
            nature = nature or token
    return ResultFlags(abnormal_flag=abnormal, nature_of_abnormality=nature)


def split_full_name(full_name: Optional[str], patient_id: Optional[str] = None) -> Tuple[str, str]:
    """
    "John"          -> ("", "John")
    "John Doe"      -> ("John", "Doe")
    "Ana M. Perez"  -> ("Ana", "M. Perez")
    Sin nombre se usa el primer token del identificador como nombre
    (compatibilidad con datos ya existentes).
    """
    parts = (full_name or "").split()
    if not parts:
        id_parts = (patient_id or "").split()
        return (id_parts[0] if id_parts else "", "")
    if len(parts) == 1:
        return ("", parts[0])
    return (parts[0], " ".join(parts[1:]))


def normalize_patient(payload: PatientPayload, patient_id: Optional[str] = None) -> NewPatient:
    given = clean_string("id", patient_id) or clean_string("id", payload.id)
    pid = given or str(uuid.uuid4())
    # el fallback de nombre usa solo el identificador recibido, nunca el generado
    first, last = split_full_name(payload.name, given)

    phone = clean_string("telephone", payload.telephone)
    street = clean_string("address", payload.address)
    ordering = clean_string("physicians", payload.physicians, extra_sentinels=("0",))
    height = parse_numeric("height", payload.height)
    weight = parse_numeric("weight", payload.weight)

    return NewPatient(
        id=pid,
        name=PersonName(first_name=first or None, last_name=last or None),
        sex=map_sex(payload.sex),
        birth_date=parse_birth_date(payload.birth_date),
        address=Address(street=street) if street else None,
        telephone=[phone] if phone else [],
        physicians=Physicians(ordering=ordering) if ordering else None,
        height=Measurement(height, "cm") if height is not None else None,
        weight=Measurement(weight, "kg") if weight is not None else None,
    )


def normalize_result(
    payload: TestResultPayload,
    patient_id: str,
    sequence_number: int = 1,
    instrument: Optional[str] = None,
) -> NewTestResult:
    return NewTestResult(
        test_id=(payload.test_id or "").strip(),
        sample_id=(payload.sample_id or "").strip(),
        value=(payload.value or "").strip(),
        patient_id=patient_id,
        status=map_status(payload.status),
        units=clean_string("units", payload.units),
        reference_range=parse_reference_range(payload.reference_range),
        flags=split_flags(payload.flags),
        completed_date_time=parse_datetime(payload.completed_date_time),
        sequence_number=sequence_number,
        instrument=instrument,
        analyzer_id=clean_string("analyzer_id", payload.analyzer_id) or instrument,
    )
