# labsync/services/results_service.py
import asyncio
import json
import shutil
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from labsync.commons.logger import logger
from labsync.helpers.file_transport import FileWatcher
from labsync.services.ingestion_service import IngestionOrchestrator, IngestionOutcome


class ResultsService:
    """Consume lotes JSON (ya decodificados por la capa del analizador) desde el inbox."""

    def __init__(self, orchestrator: IngestionOrchestrator, paths: Dict[str, str]):
        self.orchestrator = orchestrator
        self.paths = paths
        Path(paths["archive"]).mkdir(parents=True, exist_ok=True)
        Path(paths["error"]).mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _free_name(dst_dir: Path, name: str) -> Path:
        # un reenvío con el mismo nombre no pisa el lote ya archivado
        dst = dst_dir / name
        if not dst.exists():
            return dst
        stem, suffix = Path(name).stem, Path(name).suffix
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        return dst_dir / f"{stem}.{stamp}-{uuid.uuid4().hex[:8]}{suffix}"

    def _move(self, src: Optional[str], folder: str, text: str, fallback_name: str) -> Path:
        dst_dir = Path(self.paths[folder])
        if src and Path(src).exists():
            dst = self._free_name(dst_dir, Path(src).name)
            shutil.move(src, dst)
        else:
            dst = self._free_name(dst_dir, fallback_name)
            dst.write_text(text, encoding="utf-8")
        return dst

    async def process_text(self, text: str, src: Optional[str] = None) -> Optional[IngestionOutcome]:
        name = Path(src).name if src else "batch.json"
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as ex:
            errp = self._move(src, "error", text, name)
            logger.error(f"JSON inválido en {name}: {ex}. Movido a {errp}")
            return None

        outcome = await self.orchestrator.ingest_async(payload)

        if outcome.not_ready:
            # Se deja en el inbox: se reprocesa cuando el store esté listo
            logger.warning(f"{name} queda pendiente: {outcome.error}")
            return outcome
        if outcome.success:
            dst = self._move(src, "archive", text, name)
            logger.info(f"Lote archivado: {dst} ({outcome.count} resultado(s))")
        else:
            errp = self._move(src, "error", text, name)
            logger.error(f"Lote rechazado ({outcome.error}). Movido a {errp}")
        return outcome

    async def process_file(self, path: str) -> Optional[IngestionOutcome]:
        f = Path(path)
        try:
            text = f.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"No se pudo leer {f}: {e}; reintento breve...")
            await asyncio.sleep(0.1)
            text = f.read_text(encoding="utf-8")
        return await self.process_text(text, str(f))

    async def process_backlog(self, glob_pat: str) -> int:
        inbox = Path(self.paths["inbox"])
        files = sorted(inbox.glob(glob_pat))
        if not files:
            return 0
        logger.info(f"Backlog detectado: {len(files)} archivo(s) en {inbox}")
        # lotes concurrentes: cada uno en su transacción, el store serializa
        results = await asyncio.gather(
            *(self.process_file(str(f)) for f in files), return_exceptions=True
        )
        for f, res in zip(files, results):
            if isinstance(res, Exception):
                logger.opt(exception=res).error(f"Fallo inesperado con {f}")
        return len(files)

    async def run_file_mode(self, glob_pat: str, stop_event: Optional[asyncio.Event] = None):
        loop = asyncio.get_running_loop()

        # 1) backlog existente
        await self.process_backlog(glob_pat)

        # 2) watcher para archivos nuevos
        watcher = FileWatcher(self.paths["inbox"], glob_pat, self.process_text, loop)
        watcher.start()
        logger.info("Escuchando carpeta de resultados...")
        try:
            await (stop_event or asyncio.Event()).wait()
        finally:
            watcher.stop()
