import logging
import os
import sys
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _log_dir() -> str:
    override = os.environ.get("SMSLEDGER_LOG_DIR")
    if override:
        return override
    return os.path.join(os.path.expanduser("~"), ".smsledger", "logs")


def setup_logger(name="smsledger", level=logging.INFO):
    """
    Configure the application logger: rotating file + stderr.
    Never stdout, the host protocol in main.py owns it.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Idempotent: repeated imports/setup must not stack handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    try:
        log_dir = _log_dir()
        os.makedirs(log_dir, exist_ok=True)
        # Max 5MB, keep 3 backups
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "smsledger.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        # Read-only home (CI sandboxes): stderr only
        sys.stderr.write(f"smsledger: file logging disabled ({e})\n")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    return logger


def set_level(level_name: str) -> None:
    """Apply a textual level (e.g. from config) to the application logger."""
    level = logging.getLevelName(str(level_name).upper())
    if isinstance(level, int):
        logger.setLevel(level)


logger = setup_logger()
