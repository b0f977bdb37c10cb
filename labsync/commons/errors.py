# labsync/commons/errors.py
from typing import Any, Optional


class IngestionError(Exception):
    """Base de los errores del pipeline de ingesta.

    `index` y `test_id` identifican el registro que falló dentro del lote
    (cuando se conoce) para poder diagnosticarlo desde el log o la notificación.
    """

    def __init__(self, message: str, *, index: Optional[int] = None, test_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.index = index
        self.test_id = test_id

    def at_record(self, index: int, test_id: Optional[str]) -> "IngestionError":
        if self.index is None:
            self.index = index
        if self.test_id is None:
            self.test_id = test_id
        return self

    def describe(self) -> str:
        where = []
        if self.index is not None:
            where.append(f"index={self.index}")
        if self.test_id:
            where.append(f"testId={self.test_id}")
        return f"{self.message} ({', '.join(where)})" if where else self.message

    def __str__(self) -> str:
        return self.describe()


class ValidationError(IngestionError):
    def __init__(self, message: str, field: str = "", value: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value


class NotFoundError(IngestionError):
    pass


class TransientLockError(IngestionError):
    # Solo se usa dentro de la política de reintentos
    pass


class StorageError(IngestionError):
    pass


class DatabaseNotReadyError(StorageError):
    def __init__(self, state: str, reason: Optional[str] = None):
        msg = f"Database not ready (state={state})"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.state = state
        self.reason = reason
