# labsync/storage/transactions.py
import sqlite3
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy.engine import Connection, Transaction
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from labsync.commons.errors import StorageError, TransientLockError
from labsync.commons.logger import logger
from labsync.commons.types import RetryCfg
from labsync.storage.database import Database

T = TypeVar("T")

_LOCK_MARKERS = ("database is locked", "database table is locked", "busy", "locked")


def is_lock_contention(exc: BaseException) -> bool:
    """True si el store rechazó la operación porque otro escritor tiene el lock."""
    if isinstance(exc, TransientLockError):
        return True
    if isinstance(exc, DBAPIError):
        exc = exc.orig if exc.orig is not None else exc
    if not isinstance(exc, (sqlite3.OperationalError, DBAPIError)):
        return False
    text = str(exc).lower()
    return any(marker in text for marker in _LOCK_MARKERS)


def _storage_error(action: str, ex: SQLAlchemyError) -> StorageError:
    detail = ex.orig if isinstance(ex, DBAPIError) and ex.orig is not None else ex
    return StorageError(f"{action} failed: {detail}")


class RetryPolicy:
    """Interfaz de reintento compartida por lecturas y escrituras."""

    def call(self, fn: Callable[[], T], description: str = "operación") -> T:
        raise NotImplementedError


class ExponentialBackoff(RetryPolicy):
    """
    Reintenta solo contención de lock (is_retryable); el resto se propaga tal cual.
    Espera base_delay * factor**(n-1) tras el intento n fallido; agotados
    los intentos lanza StorageError.
    """

    def __init__(
        self,
        attempts: int = 3,
        base_delay: float = 0.1,
        factor: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        is_retryable: Callable[[BaseException], bool] = is_lock_contention,
    ):
        if attempts < 1:
            raise ValueError("attempts debe ser >= 1")
        self.attempts = attempts
        self.base_delay = base_delay
        self.factor = factor
        self.sleep = sleep
        self.is_retryable = is_retryable

    @classmethod
    def from_settings(cls, cfg: RetryCfg, sleep: Callable[[float], None] = time.sleep) -> "ExponentialBackoff":
        return cls(cfg.attempts, cfg.backoff_ms / 1000.0, cfg.factor, sleep=sleep)

    def delay(self, attempt: int) -> float:
        return self.base_delay * (self.factor ** (attempt - 1))

    def call(self, fn: Callable[[], T], description: str = "operación") -> T:
        last: Optional[BaseException] = None
        for attempt in range(1, self.attempts + 1):
            try:
                return fn()
            except Exception as ex:
                if not self.is_retryable(ex):
                    raise
                last = ex
                if attempt < self.attempts:
                    wait = self.delay(attempt)
                    logger.warning(
                        f"{description}: store bloqueado (intento {attempt}/{self.attempts}), "
                        f"reintento en {wait * 1000:.0f} ms"
                    )
                    self.sleep(wait)
        logger.error(f"{description}: lock no liberado tras {self.attempts} intentos")
        raise StorageError(
            f"{description} failed: database locked after {self.attempts} attempts"
        ) from last


class UnitOfWork:
    """Transacción activa sobre una conexión; cada sentencia pasa por la política."""

    def __init__(self, conn: Connection, tx: Transaction, policy: RetryPolicy):
        self._conn = conn
        self._tx = tx
        self._policy = policy
        self.closed = False

    @property
    def connection(self) -> Connection:
        return self._conn

    def execute(self, statement, parameters=None, description: str = "query"):
        try:
            return self._policy.call(lambda: self._conn.execute(statement, parameters), description)
        except SQLAlchemyError as ex:
            raise _storage_error("Query execution", ex) from ex

    def commit(self) -> None:
        try:
            self._tx.commit()
        except SQLAlchemyError as ex:
            raise _storage_error("Commit", ex) from ex
        finally:
            self._close()

    def rollback(self) -> None:
        try:
            self._tx.rollback()
        finally:
            self._close()

    def _close(self) -> None:
        if not self.closed:
            self.closed = True
            self._conn.close()


class TransactionManager:
    def __init__(self, database: Database, policy: Optional[RetryPolicy] = None):
        self.database = database
        self.policy = policy or ExponentialBackoff()

    def begin(self) -> UnitOfWork:
        # Falla rápido si el store no está READY (sin reintentos ni cola)
        self.database.ensure_ready()

        def _open():
            conn = self.database.connect()
            try:
                tx = conn.begin()
            except Exception:
                conn.close()
                raise
            return conn, tx

        try:
            conn, tx = self.policy.call(_open, "BEGIN")
        except SQLAlchemyError as ex:
            raise _storage_error("Begin transaction", ex) from ex
        return UnitOfWork(conn, tx, self.policy)

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        uow = self.begin()
        try:
            yield uow
        except BaseException as ex:
            self._safe_rollback(uow, ex)
            raise
        uow.commit()

    def run(self, work: Callable[[UnitOfWork], T]) -> T:
        with self.transaction() as uow:
            return work(uow)

    def read(self, work: Callable[[Connection], T], description: str = "lectura") -> T:
        self.database.ensure_ready()

        def _read():
            with self.database.connect(readonly=True) as conn:
                return work(conn)

        try:
            return self.policy.call(_read, description)
        except SQLAlchemyError as ex:
            raise _storage_error("Read", ex) from ex

    @staticmethod
    def _safe_rollback(uow: UnitOfWork, original: BaseException) -> None:
        if uow.closed:
            return
        try:
            uow.rollback()
        except Exception as rb_ex:
            # No debe tapar el error original
            logger.opt(exception=rb_ex).error(
                f"Rollback falló; se propaga el error original: {original!r}"
            )
