# labsync/storage/database.py
import threading
from enum import Enum
from typing import Optional

from sqlalchemy import create_engine, event, inspect, make_url
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from labsync.commons.errors import DatabaseNotReadyError
from labsync.commons.logger import logger
from labsync.commons.types import DatabaseCfg
from labsync.storage.schema import REQUIRED_TABLES, metadata


class DatabaseState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class Database:
    """Handle único del store SQLite, compartido por todo el proceso.

    Ciclo de vida: UNINITIALIZED -> INITIALIZING -> READY | FAILED.
    Solo en READY se entregan conexiones; en cualquier otro estado
    `ensure_ready()` falla de inmediato con DatabaseNotReadyError.
    """

    def __init__(
        self,
        url: str = "sqlite:///labsync.db",
        busy_timeout_sec: float = 5.0,
        create_schema: bool = True,
        echo: bool = False,
    ):
        self.url = url
        self.busy_timeout_sec = busy_timeout_sec
        self.create_schema = create_schema
        self.echo = echo
        self.state = DatabaseState.UNINITIALIZED
        self.error: Optional[str] = None
        self._engine: Optional[Engine] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, cfg: DatabaseCfg) -> "Database":
        return cls(cfg.url, cfg.busy_timeout_sec, cfg.create_schema, cfg.echo)

    @property
    def is_ready(self) -> bool:
        return self.state is DatabaseState.READY

    @property
    def engine(self) -> Engine:
        self.ensure_ready()
        return self._engine

    def initialize(self) -> DatabaseState:
        with self._lock:
            if self.state is DatabaseState.READY:
                return self.state
            self.state = DatabaseState.INITIALIZING
            self.error = None
            engine = None
            try:
                engine = self._create_engine()
                if self.create_schema:
                    metadata.create_all(engine)
                existing = set(inspect(engine).get_table_names())
                missing = [t for t in REQUIRED_TABLES if t not in existing]
                if missing:
                    engine.dispose()
                    return self._fail(
                        f"Required database tables do not exist ({', '.join(missing)}). "
                        "Please run migrations."
                    )
            except (SQLAlchemyError, ArgumentError, ValueError) as ex:
                if engine is not None:
                    engine.dispose()
                return self._fail(f"Database initialization failed: {ex}")

            self._engine = engine
            self.state = DatabaseState.READY
            logger.info(f"Base de datos lista: {self._safe_url()}")
            return self.state

    def ensure_ready(self) -> None:
        if self.state is not DatabaseState.READY:
            raise DatabaseNotReadyError(self.state.value, self.error)

    def connect(self, readonly: bool = False) -> Connection:
        conn = self.engine.connect()
        if readonly:
            conn.execution_options(sqlite_begin="DEFERRED")
        return conn

    def dispose(self) -> None:
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
            self._engine = None
            self.state = DatabaseState.UNINITIALIZED

    def status(self) -> dict:
        return {"url": self._safe_url(), "state": self.state.value, "error": self.error}

    # ----------------- internos -----------------
    def _fail(self, message: str) -> DatabaseState:
        self.error = message
        self.state = DatabaseState.FAILED
        logger.error(message)
        return self.state

    def _safe_url(self) -> str:
        try:
            return make_url(self.url).render_as_string(hide_password=True)
        except ArgumentError:
            return "<url inválida>"

    def _create_engine(self) -> Engine:
        url = make_url(self.url)
        if url.get_backend_name() != "sqlite":
            raise ValueError(f"Backend no soportado: {url.get_backend_name()} (solo sqlite)")

        in_memory = url.database in (None, "", ":memory:")
        connect_args = {"check_same_thread": False, "timeout": self.busy_timeout_sec}
        if in_memory:
            engine = create_engine(
                url, echo=self.echo, connect_args=connect_args, poolclass=StaticPool
            )
        else:
            engine = create_engine(url, echo=self.echo, connect_args=connect_args)

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn, _record):
            # El driver deja de emitir BEGIN por su cuenta; lo hace el evento "begin"
            dbapi_conn.isolation_level = None
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            if not in_memory:
                cur.execute("PRAGMA journal_mode=WAL")
            cur.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            # Escritores: IMMEDIATE toma el lock de escritura al iniciar
            mode = conn.get_execution_options().get("sqlite_begin", "IMMEDIATE")
            conn.exec_driver_sql(f"BEGIN {mode}")

        return engine
