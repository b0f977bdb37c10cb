import asyncio
import json
import os
import sys
from pathlib import Path
from typing import List

import typer
import yaml

from labsync.commons.logger import setup_logging
from labsync.commons.types import Settings
from labsync.services.ingestion_service import IngestionOrchestrator
from labsync.services.results_service import ResultsService
from labsync.storage.database import Database, DatabaseState
from labsync.storage.repositories import PatientRepository, TestResultRepository
from labsync.storage.transactions import ExponentialBackoff, TransactionManager

app = typer.Typer(add_completion=False, help="Lab results ingestion service")


def resource_path(relative_path: str) -> str:
    """Devuelve la ruta absoluta a un recurso, ya sea ejecutando como .exe o en desarrollo"""
    if hasattr(sys, "_MEIPASS"):
        # Si es un ejecutable generado por PyInstaller
        base_path = sys._MEIPASS
    else:
        base_path = os.path.abspath(".")

    return os.path.join(base_path, relative_path)


def load_cfg(path: str = "labsync/configs/settings.yaml") -> Settings:
    config_path = resource_path(path)
    with open(config_path, "r", encoding="utf-8") as f:
        return Settings.model_validate(yaml.safe_load(f) or {})


def _bootstrap(cfg: Settings):
    logger = setup_logging(cfg.paths.logs_root, os.getenv("LOG_LEVEL", "INFO"))
    db = Database.from_settings(cfg.database)
    db.initialize()
    tx = TransactionManager(db, ExponentialBackoff.from_settings(cfg.retry))
    return logger, db, tx


@app.command()
def init_db(config: str = typer.Option("labsync/configs/settings.yaml", help="ruta de settings")):
    """Crea/verifica las tablas y deja el store en READY."""
    cfg = load_cfg(config)
    logger, db, _ = _bootstrap(cfg)
    if db.state is not DatabaseState.READY:
        logger.error(f"Base de datos no disponible: {db.error}")
        raise typer.Exit(code=1)
    logger.info("Esquema verificado")
    db.dispose()


@app.command()
def ingest(
    files: List[Path] = typer.Argument(..., exists=True, dir_okay=False, help="lotes JSON"),
    config: str = typer.Option("labsync/configs/settings.yaml", help="ruta de settings"),
):
    """Ingesta uno o más lotes JSON sin moverlos de sitio."""
    cfg = load_cfg(config)
    logger, db, tx = _bootstrap(cfg)
    orchestrator = IngestionOrchestrator(db, tx)
    failed = 0
    for f in files:
        try:
            payload = json.loads(f.read_text(encoding="utf-8"))
        except json.JSONDecodeError as ex:
            logger.error(f"JSON inválido en {f}: {ex}")
            failed += 1
            continue
        outcome = orchestrator.ingest(payload)
        if outcome.success:
            typer.echo(f"{f.name}: paciente {outcome.patient_id}, {outcome.count} resultado(s)")
        else:
            typer.echo(f"{f.name}: ERROR {outcome.error}", err=True)
            failed += 1
    db.dispose()
    if failed:
        raise typer.Exit(code=1)


@app.command()
def results(config: str = typer.Option("labsync/configs/settings.yaml", help="ruta de settings")):
    """Procesa el backlog del inbox y queda escuchando nuevos lotes."""
    cfg = load_cfg(config)
    logger, db, tx = _bootstrap(cfg)
    logger.log("INFO", "Iniciando lectura de resultados pendientes por procesar")
    if db.state is not DatabaseState.READY:
        # Sin store no se intenta ninguna ingesta
        logger.error(f"Base de datos no disponible: {db.error}")
        raise typer.Exit(code=1)

    svc = ResultsService(IngestionOrchestrator(db, tx), cfg.paths.model_dump())
    glob_pat = cfg.transport["results"].file.filename_glob
    try:
        asyncio.run(svc.run_file_mode(glob_pat))
    except KeyboardInterrupt:
        logger.info("Detenido por el usuario")
    finally:
        db.dispose()


@app.command()
def status(config: str = typer.Option("labsync/configs/settings.yaml", help="ruta de settings")):
    """Estado del store y conteos."""
    cfg = load_cfg(config)
    _, db, tx = _bootstrap(cfg)
    info = db.status()
    if db.is_ready:
        info["patients"] = tx.read(lambda conn: PatientRepository(conn).count())
        info["test_results"] = tx.read(lambda conn: TestResultRepository(conn).statistics())
    typer.echo(json.dumps(info, indent=2, default=str))
    db.dispose()


if __name__ == "__main__":
    app()
