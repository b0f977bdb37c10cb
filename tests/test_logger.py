"""
test_logger.py
"""
from datetime import datetime

from labsync.commons.logger import logger, setup_logging


def test_daily_log_and_error_sink(tmp_path):
    setup_logging(str(tmp_path), "INFO")
    try:
        logger.info("lote recibido de A1")
        logger.error("lote de A1 descartado")
        logger.complete()
    finally:
        logger.remove()

    logdir = tmp_path / datetime.now().strftime("%Y/%m/%d")
    main = (logdir / "labsync.log").read_text(encoding="utf-8")
    errors = (logdir / "errors.log").read_text(encoding="utf-8")
    assert "lote recibido de A1" in main and "lote de A1 descartado" in main
    assert "lote de A1 descartado" in errors
    assert "lote recibido" not in errors
