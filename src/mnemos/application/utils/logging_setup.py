"""Per-run logging: stderr plus one log file per run in the configured log directory."""

import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from mnemos.application.id_service import generate_run_id

LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"

# verbose 0 -> warnings only, 1 -> info, 2+ -> debug
_LEVELS = {0: logging.WARNING, 1: logging.INFO}


def level_for(verbose: int) -> int:
    return _LEVELS.get(verbose, logging.DEBUG if verbose > 1 else logging.WARNING)


def setup_logging(log_dir: Path, verbose: int = 1) -> tuple[logging.Logger, Path, str]:
    """
    Configure the root "mnemos" logger for one run.

    Returns:
        (logger, log file path, run id)
    """
    run_id = generate_run_id()
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    log_path = log_dir / f"mnemos_{stamp}_{run_id}.log"

    logger = logging.getLogger("mnemos")
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level_for(verbose))
    console.setFormatter(logging.Formatter("%(levelname)s:%(name)s:%(message)s"))
    logger.addHandler(console)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)

    logger.propagate = False
    logger.debug(f"Run {run_id} logging to {log_path}")
    return logger, log_path, run_id
