from datetime import datetime
from pathlib import Path

from loguru import logger

_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {message}"


def setup_logging(root: str, level: str = "INFO", filename: str = "labsync.log"):
    """
    Sinks del proceso:
      - <root>/YYYY/MM/DD/<filename>  todo desde `level`
      - <root>/YYYY/MM/DD/errors.log  solo ERROR+ (lotes rechazados, store caído)
      - consola
    """
    logdir = Path(root) / datetime.now().strftime("%Y/%m/%d")
    logdir.mkdir(parents=True, exist_ok=True)
    logger.remove()
    common = dict(
        rotation="00:00",
        retention="14 days",
        enqueue=True,
        backtrace=True,
        # los payloads llevan datos de pacientes: sin valores de variables en trazas
        diagnose=False,
        format=_FORMAT,
    )
    logger.add(str(logdir / filename), level=level, **common)
    logger.add(str(logdir / "errors.log"), level="ERROR", **common)
    logger.add(lambda m: print(m, end=""), level=level, format=_FORMAT)
    return logger
