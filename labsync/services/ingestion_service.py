# labsync/services/ingestion_service.py
import asyncio
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as SchemaError

from labsync.commons.errors import DatabaseNotReadyError, IngestionError, ValidationError
from labsync.commons.logger import logger
from labsync.commons.models import Patient
from labsync.commons.normalizer import clean_string
from labsync.commons.types import LabResultsBatch
from labsync.helpers.notifier import (
    BatchFailed,
    BatchIngested,
    DatabaseNotReady,
    NotificationBus,
    bus,
)
from labsync.services.patient_resolver import PatientResolver
from labsync.services.result_writer import ResultWriter
from labsync.storage.database import Database
from labsync.storage.repositories import PatientRepository, TestResultRepository
from labsync.storage.transactions import TransactionManager, UnitOfWork

BatchInput = Union[LabResultsBatch, Mapping[str, Any]]

UNKNOWN_PATIENT = "Unknown Patient"


@dataclass
class IngestionOutcome:
    analyzer_id: str
    success: bool
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    result_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None
    failed_index: Optional[int] = None
    failed_test_id: Optional[str] = None
    not_ready: bool = False

    @property
    def count(self) -> int:
        return len(self.result_ids)


def parse_batch(batch: BatchInput) -> LabResultsBatch:
    if isinstance(batch, LabResultsBatch):
        return batch
    try:
        return LabResultsBatch.model_validate(batch)
    except SchemaError as ex:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in ex.errors()
        )
        raise ValidationError(f"Invalid lab results payload: {problems}", field="batch") from ex


def _analyzer_of(batch: BatchInput) -> str:
    if isinstance(batch, LabResultsBatch):
        return batch.analyzer_id
    if isinstance(batch, Mapping):
        value = batch.get("analyzerId") or batch.get("analyzer_id")
        if value:
            return str(value)
    return "unknown"


class IngestionOrchestrator:
    """
    Punto de entrada del pipeline: un lote = una transacción.

    resolve(paciente) -> insert(resultados) -> COMMIT; cualquier error hace
    ROLLBACK del lote completo y se notifica un único fallo. Nunca lanza
    hacia el llamador: devuelve IngestionOutcome y publica en el bus.
    """

    def __init__(
        self,
        database: Database,
        transactions: Optional[TransactionManager] = None,
        notifier: Optional[NotificationBus] = None,
    ):
        self.database = database
        self.transactions = transactions or TransactionManager(database)
        self.notifier = notifier or bus

    def ingest(self, batch: BatchInput) -> IngestionOutcome:
        analyzer_id = _analyzer_of(batch)
        try:
            parsed = parse_batch(batch)
        except ValidationError as ex:
            return self._failed(analyzer_id, ex)

        logger.info(
            f"Lote recibido de {parsed.analyzer_id}: {len(parsed.test_results)} resultado(s)"
        )
        if not self.database.is_ready:
            return self._not_ready(
                parsed.analyzer_id, DatabaseNotReadyError(self.database.state.value, self.database.error)
            )

        try:
            patient, result_ids = self.transactions.run(lambda uow: self._process(uow, parsed))
        except DatabaseNotReadyError as ex:
            return self._not_ready(parsed.analyzer_id, ex)
        except IngestionError as ex:
            return self._failed(parsed.analyzer_id, ex)
        except Exception as ex:
            logger.exception(f"Error inesperado procesando lote de {parsed.analyzer_id}")
            return self._failed(parsed.analyzer_id, IngestionError(f"Unexpected error: {ex}"))

        name = patient.name.display or self._payload_name(parsed) or UNKNOWN_PATIENT
        outcome = IngestionOutcome(
            analyzer_id=parsed.analyzer_id,
            success=True,
            patient_id=patient.id,
            patient_name=name,
            result_ids=result_ids,
        )
        self.notifier.publish(
            BatchIngested(parsed.analyzer_id, patient.id, name, list(result_ids))
        )
        return outcome

    async def ingest_async(self, batch: BatchInput) -> IngestionOutcome:
        # la transacción es bloqueante (sqlite); cada lote en su propio hilo
        return await asyncio.to_thread(self.ingest, batch)

    def _process(self, uow: UnitOfWork, batch: LabResultsBatch) -> Tuple[Patient, List[str]]:
        resolver = PatientResolver(PatientRepository(uow))
        writer = ResultWriter(TestResultRepository(uow))

        data = batch.patient_data
        patient_id = (clean_string("id", data.id) if data else None) or batch.patient_id
        patient = resolver.resolve(
            patient_id=patient_id,
            full_name=data.name if data else None,
            demographics=data,
        )
        if not batch.test_results:
            logger.warning(f"Lote de {batch.analyzer_id} sin resultados")
        result_ids = writer.write(patient.id, batch.test_results, instrument=batch.analyzer_id)
        return patient, result_ids

    @staticmethod
    def _payload_name(batch: LabResultsBatch) -> Optional[str]:
        if batch.patient_data and batch.patient_data.name:
            return batch.patient_data.name.strip() or None
        return None

    def _failed(self, analyzer_id: str, ex: IngestionError) -> IngestionOutcome:
        cause = ex.describe()
        logger.error(f"Lote de {analyzer_id} descartado (rollback): {cause}")
        self.notifier.publish(BatchFailed(analyzer_id, cause, ex.index, ex.test_id))
        return IngestionOutcome(
            analyzer_id=analyzer_id,
            success=False,
            error=cause,
            failed_index=ex.index,
            failed_test_id=ex.test_id,
        )

    def _not_ready(self, analyzer_id: str, ex: DatabaseNotReadyError) -> IngestionOutcome:
        logger.error(f"Lote de {analyzer_id} no procesado: {ex.message}")
        self.notifier.publish(DatabaseNotReady(analyzer_id, ex.message))
        return IngestionOutcome(
            analyzer_id=analyzer_id, success=False, error=ex.message, not_ready=True
        )
