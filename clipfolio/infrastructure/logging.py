import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
LOG_FILE_NAME = "clipfolio.log"

# watchdog logs every raw inotify/FSEvents record at DEBUG
NOISY_LOGGERS = ("watchdog",)


def setup_logging(log_dir: Path, debug: bool = False, log_path: Optional[Path] = None) -> logging.Logger:
    """Routes all clipfolio logging into one file, normally ``<cache root>/clipfolio.log``.

    ``debug`` also logs full ffmpeg command lines and cache joins/hits.
    ``log_path`` overrides the file location.
    """
    log_file = Path(log_path) if log_path else Path(log_dir) / LOG_FILE_NAME
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        handlers=[logging.FileHandler(log_file)],
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)

    logger = logging.getLogger("clipfolio")
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")
    return logger
