from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Tuple

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
CONSOLE_FORMAT = "[%(levelname)s] %(message)s"


def create_session_logger(*, log_dir: str, debug: bool, label: str = "session") -> Tuple[logging.Logger, str]:
    """Open a fresh ``<label>_<timestamp>.log`` file and a logger writing only to it.

    Request payloads are logged at DEBUG and always land in the file; ``debug``
    additionally echoes warnings and errors to stderr.
    """
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = directory / f"{label}_{stamp}.log"

    logger = logging.getLogger(f"chat_{label}_{stamp}")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    close_session_logger(logger)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    logger.addHandler(file_handler)

    if debug:
        console = logging.StreamHandler()
        console.setLevel(logging.WARNING)
        console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        logger.addHandler(console)

    return logger, str(log_path)


def close_session_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
