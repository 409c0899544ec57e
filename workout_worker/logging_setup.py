import logging
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "workout_worker"

# Client libraries that log every HTTP request at INFO
QUIET_LOGGERS = ("httpx", "openai", "urllib3", "botocore")


def setup_logging(log_level: str = "INFO", log_dir: str = "/app/data/worker") -> logging.Logger:
    """Setup rotating file logger to <log_dir>/log.log plus console output"""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Re-initialisation must not stack handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s'
    )

    log_file = log_path / "log.log"
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=3,
        encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(f"Logging initialized at {log_level.upper()}. Log file: {log_file}")
    return logger


def log_exception(logger: logging.Logger, message: str) -> None:
    """Log an error message together with the active traceback"""
    logger.error(f"{message}\n{traceback.format_exc()}")
