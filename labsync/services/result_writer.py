# labsync/services/result_writer.py
from typing import List, Optional, Sequence

from labsync.commons.errors import IngestionError, StorageError, ValidationError
from labsync.commons.logger import logger
from labsync.commons.models import NewTestResult
from labsync.commons.normalizer import normalize_result
from labsync.commons.types import TestResultPayload
from labsync.storage.repositories import TestResultRepository


def validate_result(result: NewTestResult) -> None:
    if not result.test_id:
        raise ValidationError("Test ID is required", field="testId", value=result.test_id)
    if not result.sample_id:
        raise ValidationError("Sample ID is required", field="sampleId", value=result.sample_id)
    if not result.value:
        raise ValidationError("Test value is required", field="value", value=result.value)
    rr = result.reference_range
    if rr.lower_limit is not None and rr.upper_limit is not None and rr.lower_limit >= rr.upper_limit:
        raise ValidationError(
            "Lower limit must be less than upper limit", field="referenceRange", value=rr
        )


class ResultWriter:
    def __init__(self, results: TestResultRepository):
        self.results = results

    def write(
        self,
        patient_id: str,
        payloads: Sequence[TestResultPayload],
        instrument: Optional[str] = None,
    ) -> List[str]:
        """Normaliza, valida e inserta en orden; el primer fallo corta el lote."""
        if not payloads:
            return []
        logger.info(f"Insertando {len(payloads)} resultado(s) para paciente {patient_id}")
        ids: List[str] = []
        for index, payload in enumerate(payloads):
            try:
                result = normalize_result(
                    payload, patient_id, sequence_number=index + 1, instrument=instrument
                )
                validate_result(result)
                ids.append(self.results.insert(result))
            except IngestionError as ex:
                logger.error(f"Resultado {index + 1}/{len(payloads)} ({payload.test_id}) falló: {ex}")
                raise ex.at_record(index, payload.test_id)
            except Exception as ex:
                logger.exception(f"Resultado {index + 1}/{len(payloads)} ({payload.test_id}) falló")
                raise StorageError(f"Unexpected error: {ex}").at_record(index, payload.test_id) from ex
            logger.debug(f"Resultado {index + 1}/{len(payloads)} insertado: {ids[-1]}")
        return ids
