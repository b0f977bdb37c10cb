# labsync/services/patient_resolver.py
from typing import Optional

from labsync.commons.errors import ValidationError
from labsync.commons.logger import logger
from labsync.commons.models import Patient
from labsync.commons.normalizer import clean_string, normalize_patient, split_full_name
from labsync.commons.types import PatientPayload
from labsync.storage.repositories import PatientRepository


class PatientResolver:
    """Busca el paciente por id o por nombre; si no existe lo crea.

    Trabaja siempre dentro de la transacción del lote (la UnitOfWork del
    repositorio), así el id devuelto sirve como FK en el mismo lote.
    """

    def __init__(self, patients: PatientRepository):
        self.patients = patients

    def resolve(
        self,
        patient_id: Optional[str] = None,
        full_name: Optional[str] = None,
        demographics: Optional[PatientPayload] = None,
    ) -> Patient:
        pid = clean_string("patient_id", patient_id)

        # 1) por clave primaria
        if pid:
            found = self.patients.find_by_id(pid)
            if found:
                logger.info(f"Paciente existente por id: {found.id}")
                return found
            logger.debug(f"Paciente {pid} no encontrado por id")

        # 2) por nombre (substring, orden apellido/nombre)
        if full_name and full_name.strip():
            found = self.find_by_name(full_name)
            if found:
                logger.info(f"Paciente existente por nombre {full_name!r}: {found.id}")
                return found

        # 3) alta
        if demographics is None and not pid:
            raise ValidationError(
                "Patient identifier or patient data is required", field="patientId", value=patient_id
            )
        payload = demographics or PatientPayload(id=pid, name=full_name)
        new = normalize_patient(payload, patient_id=pid)
        created = self.patients.insert_if_absent(new)
        logger.info(f"Paciente creado: {created.id} ({created.name.display or 'sin nombre'})")
        return created

    def find_by_name(self, full_name: str) -> Optional[Patient]:
        first, last = split_full_name(full_name)
        matches = self.patients.search_by_name(last_name=last, first_name=first, limit=10)
        return matches[0] if matches else None
