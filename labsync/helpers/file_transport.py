import asyncio
import threading
import time
from pathlib import Path

from watchdog.events import PatternMatchingEventHandler
from watchdog.observers import Observer

from labsync.commons.logger import logger


class FileWatcher:
    """Vigila el inbox y entrega (texto, ruta) a la corrutina on_message_async."""

    def __init__(
        self,
        inbox: str,
        glob: str,
        on_message_async,
        loop: asyncio.AbstractEventLoop,
        settle_sec: float = 0.2,
    ):
        self.inbox = Path(inbox)
        self.inbox.mkdir(parents=True, exist_ok=True)
        self.loop = loop
        self.on_message_async = on_message_async
        self.settle_sec = settle_sec
        self.handler = PatternMatchingEventHandler(patterns=[glob], ignore_directories=True)
        # created + modified llegan juntos: un archivo solo se encola una vez
        self._pending = set()
        self._lock = threading.Lock()

        def _submit(path: Path):
            key = str(path)
            with self._lock:
                if key in self._pending:
                    return
                self._pending.add(key)
            try:
                text = self._read_when_settled(path)
            except FileNotFoundError:
                # Se movió justo ahora (ya procesado)
                self._release(key)
                return
            except OSError as ex:
                logger.error(f"No se pudo leer {path}: {ex}")
                self._release(key)
                return

            # Ejecutar la corrutina en el loop principal (thread-safe)
            fut = asyncio.run_coroutine_threadsafe(self.on_message_async(text, key), self.loop)
            fut.add_done_callback(lambda f: self._done(key, f))

        self.handler.on_created = lambda e: _submit(Path(e.src_path))
        self.handler.on_modified = lambda e: _submit(Path(e.src_path))
        self.handler.on_moved = lambda e: _submit(Path(e.dest_path))

        self.observer = Observer()

    def _read_when_settled(self, path: Path) -> str:
        # Espera breve hasta que el tamaño deje de cambiar (archivo aún escribiéndose)
        last = -1
        for _ in range(10):
            size = path.stat().st_size
            if size == last and size > 0:
                break
            last = size
            time.sleep(self.settle_sec / 4)
        return path.read_text(encoding="utf-8")

    def _release(self, key: str):
        with self._lock:
            self._pending.discard(key)

    def _done(self, key: str, fut):
        self._release(key)
        if not fut.cancelled() and fut.exception() is not None:
            logger.opt(exception=fut.exception()).error(f"Fallo procesando {key}")

    def start(self):
        self.observer.schedule(self.handler, str(self.inbox), recursive=False)
        self.observer.start()

    def stop(self):
        self.observer.stop()
        self.observer.join()
