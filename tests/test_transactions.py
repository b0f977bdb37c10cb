"""
test_transactions.py

Manejo de transacciones sobre SQLite:
- política de reintentos ante contención de lock,
- rollback ante cualquier error del cuerpo,
- máquina de estados del store (solo READY acepta trabajo).
"""
import sqlite3
from datetime import datetime

import pytest
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError, OperationalError

from labsync.commons.errors import DatabaseNotReadyError, StorageError, TransientLockError
from labsync.storage.database import Database, DatabaseState
from labsync.storage.schema import patients
from labsync.storage.transactions import (
    ExponentialBackoff,
    TransactionManager,
    UnitOfWork,
    is_lock_contention,
)


def make_db(**kwargs) -> Database:
    db = Database("sqlite://", **kwargs)
    db.initialize()
    return db


def locked_error() -> OperationalError:
    return OperationalError("BEGIN IMMEDIATE", None, sqlite3.OperationalError("database is locked"))


def patient_row(pid: str) -> dict:
    now = datetime(2025, 1, 1)
    return {"id": pid, "sex": "U", "telephone": "[]", "created_at": now, "updated_at": now}


class Sleeps(list):
    def __call__(self, seconds):
        self.append(seconds)


# ----------------- clasificación -----------------
def test_lock_contention_classification():
    assert is_lock_contention(locked_error())
    assert is_lock_contention(sqlite3.OperationalError("database table is locked"))
    assert is_lock_contention(TransientLockError("busy"))
    assert not is_lock_contention(sqlite3.OperationalError("no such table: x"))
    assert not is_lock_contention(IntegrityError("INSERT", None, sqlite3.IntegrityError("UNIQUE")))
    assert not is_lock_contention(ValueError("locked"))


# ----------------- política de reintentos -----------------
def test_backoff_retries_then_succeeds():
    sleeps = Sleeps()
    policy = ExponentialBackoff(sleep=sleeps)
    calls = []

    def op():
        calls.append(1)
        if len(calls) < 3:
            raise locked_error()
        return "ok"

    assert policy.call(op) == "ok"
    assert len(calls) == 3
    assert sleeps == pytest.approx([0.1, 0.2])


def test_backoff_gives_up_after_three_attempts():
    sleeps = Sleeps()
    policy = ExponentialBackoff(sleep=sleeps)
    calls = []

    def op():
        calls.append(1)
        raise locked_error()

    with pytest.raises(StorageError) as exc:
        policy.call(op, "insert")
    assert len(calls) == 3
    assert sleeps == pytest.approx([0.1, 0.2])
    assert sleeps[1] > sleeps[0]
    assert "3 attempts" in str(exc.value)
    assert is_lock_contention(exc.value.__cause__)


def test_backoff_does_not_retry_other_errors():
    sleeps = Sleeps()
    policy = ExponentialBackoff(sleep=sleeps)
    calls = []

    def op():
        calls.append(1)
        raise IntegrityError("INSERT", None, sqlite3.IntegrityError("FOREIGN KEY constraint failed"))

    with pytest.raises(IntegrityError):
        policy.call(op)
    assert len(calls) == 1
    assert sleeps == []


def test_backoff_schedule_is_exponential():
    policy = ExponentialBackoff(attempts=4, base_delay=0.1, factor=2)
    assert [policy.delay(n) for n in (1, 2, 3)] == pytest.approx([0.1, 0.2, 0.4])
    with pytest.raises(ValueError):
        ExponentialBackoff(attempts=0)


# ----------------- estados del store -----------------
def test_begin_fails_fast_when_uninitialized():
    db = Database("sqlite://")
    assert db.state is DatabaseState.UNINITIALIZED
    with pytest.raises(DatabaseNotReadyError) as exc:
        TransactionManager(db).begin()
    assert exc.value.state == "uninitialized"


def test_missing_tables_leave_store_failed():
    db = Database("sqlite://", create_schema=False)
    assert db.initialize() is DatabaseState.FAILED
    assert "Required database tables do not exist" in db.error
    with pytest.raises(DatabaseNotReadyError):
        TransactionManager(db).begin()


def test_unsupported_backend_fails_initialization():
    db = Database("postgresql://user:pw@localhost/lab")
    assert db.initialize() is DatabaseState.FAILED
    assert "solo sqlite" in db.error


def test_initialize_is_idempotent_and_dispose_resets():
    db = make_db()
    assert db.initialize() is DatabaseState.READY
    db.dispose()
    assert db.state is DatabaseState.UNINITIALIZED


# ----------------- transacciones -----------------
def test_commit_persists_rows():
    db = make_db()
    tm = TransactionManager(db)
    with tm.transaction() as uow:
        uow.execute(insert(patients).values(**patient_row("P1")))
    ids = tm.read(lambda conn: conn.execute(select(patients.c.id)).scalars().all())
    assert ids == ["P1"]


def test_exception_in_body_rolls_back():
    db = make_db()
    tm = TransactionManager(db)
    with pytest.raises(RuntimeError):
        with tm.transaction() as uow:
            uow.execute(insert(patients).values(**patient_row("P1")))
            raise RuntimeError("fallo a mitad de lote")
    count = tm.read(lambda conn: len(conn.execute(select(patients.c.id)).all()))
    assert count == 0


def test_storage_failure_is_wrapped_and_rolled_back():
    db = make_db()
    tm = TransactionManager(db)
    with pytest.raises(StorageError) as exc:
        with tm.transaction() as uow:
            uow.execute(insert(patients).values(**patient_row("P1")))
            uow.execute(insert(patients).values(**patient_row("P1")))  # PK duplicada
    assert "UNIQUE" in str(exc.value)
    count = tm.read(lambda conn: len(conn.execute(select(patients.c.id)).all()))
    assert count == 0


def test_failed_rollback_does_not_hide_original_error(monkeypatch):
    db = make_db()
    tm = TransactionManager(db)
    real_rollback = UnitOfWork.rollback

    def broken_rollback(self):
        real_rollback(self)
        raise RuntimeError("rollback roto")

    monkeypatch.setattr(UnitOfWork, "rollback", broken_rollback)
    with pytest.raises(ValueError, match="original"):
        with tm.transaction():
            raise ValueError("original")


def test_run_returns_work_result():
    tm = TransactionManager(make_db())
    assert tm.run(lambda uow: uow.execute(select(patients.c.id)).all()) == []


class FlakyDatabase:
    """Delegado que falla con 'database is locked' las primeras N conexiones."""

    def __init__(self, real: Database, failures: int):
        self.real = real
        self.failures = failures
        self.attempts = 0

    def ensure_ready(self):
        self.real.ensure_ready()

    def connect(self, readonly=False):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise locked_error()
        return self.real.connect(readonly=readonly)


def test_begin_is_retried_under_contention():
    sleeps = Sleeps()
    flaky = FlakyDatabase(make_db(), failures=2)
    tm = TransactionManager(flaky, ExponentialBackoff(sleep=sleeps))
    uow = tm.begin()
    uow.rollback()
    assert flaky.attempts == 3
    assert sleeps == pytest.approx([0.1, 0.2])


def test_begin_gives_up_after_retries():
    sleeps = Sleeps()
    flaky = FlakyDatabase(make_db(), failures=5)
    tm = TransactionManager(flaky, ExponentialBackoff(sleep=sleeps))
    with pytest.raises(StorageError):
        tm.begin()
    assert flaky.attempts == 3


def test_real_writer_lock_is_retried_then_fatal(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'lab.db'}", busy_timeout_sec=0)
    assert db.initialize() is DatabaseState.READY
    sleeps = Sleeps()
    tm = TransactionManager(db, ExponentialBackoff(sleep=sleeps))

    holder = tm.begin()  # BEGIN IMMEDIATE: toma el lock de escritura
    try:
        with pytest.raises(StorageError, match="database locked"):
            tm.begin()
        assert len(sleeps) == 2
    finally:
        holder.rollback()

    # liberado el lock, el siguiente escritor entra sin esperar
    uow = tm.begin()
    uow.rollback()
    db.dispose()


class FlakyConnection:
    """Conexión real cuyo execute falla con 'database is locked' las primeras N veces."""

    def __init__(self, real, failures: int):
        self.real = real
        self.failures = failures
        self.attempts = 0

    def execute(self, statement, parameters=None):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise locked_error()
        return self.real.execute(statement, parameters)

    def __getattr__(self, name):
        return getattr(self.real, name)


class LockedStatementsDatabase:
    def __init__(self, real: Database, failures: int):
        self.real = real
        self.failures = failures
        self.connections = []

    def ensure_ready(self):
        self.real.ensure_ready()

    def connect(self, readonly=False):
        conn = FlakyConnection(self.real.connect(readonly=readonly), self.failures)
        self.connections.append(conn)
        return conn


def test_statement_is_retried_under_contention():
    sleeps = Sleeps()
    db = make_db()
    locked = LockedStatementsDatabase(db, failures=2)
    tm = TransactionManager(locked, ExponentialBackoff(sleep=sleeps))

    with tm.transaction() as uow:
        uow.execute(insert(patients).values(**patient_row("P1")), description="patient insert")

    assert locked.connections[0].attempts == 3
    assert sleeps == pytest.approx([0.1, 0.2])
    ids = TransactionManager(db).read(lambda conn: conn.execute(select(patients.c.id)).scalars().all())
    assert ids == ["P1"]


def test_statement_gives_up_and_rolls_back():
    sleeps = Sleeps()
    db = make_db()
    tm = TransactionManager(LockedStatementsDatabase(db, failures=10), ExponentialBackoff(sleep=sleeps))
    with pytest.raises(StorageError, match="database locked after 3 attempts"):
        with tm.transaction() as uow:
            uow.execute(insert(patients).values(**patient_row("P1")), description="patient insert")
    assert len(sleeps) == 2
    count = TransactionManager(db).read(lambda conn: len(conn.execute(select(patients.c.id)).all()))
    assert count == 0
