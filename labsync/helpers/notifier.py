# labsync/helpers/notifier.py
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Union

from labsync.commons.logger import logger


@dataclass(frozen=True)
class BatchIngested:
    analyzer_id: str
    patient_id: str
    patient_name: str
    result_ids: List[str]
    at: datetime = field(default_factory=datetime.now)

    @property
    def count(self) -> int:
        return len(self.result_ids)

    @property
    def title(self) -> str:
        return "New Lab Results"

    @property
    def message(self) -> str:
        return f"Processed {self.count} test results for {self.patient_name}"


@dataclass(frozen=True)
class BatchFailed:
    analyzer_id: str
    cause: str
    index: Optional[int] = None
    test_id: Optional[str] = None
    at: datetime = field(default_factory=datetime.now)

    @property
    def title(self) -> str:
        return "Lab Results Error"

    @property
    def message(self) -> str:
        return f"[{self.analyzer_id}] {self.cause}"


@dataclass(frozen=True)
class DatabaseNotReady:
    analyzer_id: str
    cause: str
    at: datetime = field(default_factory=datetime.now)

    @property
    def title(self) -> str:
        return "Database Error"

    @property
    def message(self) -> str:
        return f"Database not ready, lab results not processed: {self.cause}"


Notification = Union[BatchIngested, BatchFailed, DatabaseNotReady]
Listener = Callable[[Notification], None]


class NotificationBus:
    """Bus de avisos del proceso (UI, consola...). Un listener roto no afecta a los demás."""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: Notification) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Listener de notificaciones falló con {type(event).__name__}")


def log_notification(event: Notification) -> None:
    if isinstance(event, BatchIngested):
        logger.info(f"{event.title}: {event.message} (paciente {event.patient_id})")
    else:
        logger.error(f"{event.title}: {event.message}")


# bus por defecto del proceso
bus = NotificationBus()
bus.subscribe(log_notification)
