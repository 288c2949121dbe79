import logging
import sys
from . import config

LOG_FILE_PATH = config.DATA_DIR / "triage_session.log"


def setup_logging(log_level=logging.INFO, testing_mode=False):
    """Configures logging for the triage_cli package."""

    logger = logging.getLogger("triage_cli")
    logger.setLevel(log_level)

    # Prevent duplicate handlers if setup_logging is called more than once
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s"
    )

    # stdout is reserved for --output-format json
    if not testing_mode:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    try:
        file_handler = logging.FileHandler(LOG_FILE_PATH, mode="a")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        # No handler may be attached yet
        print(f"CRITICAL LOGGING ERROR during file_handler setup: {e}", file=sys.stderr)
        if logger.handlers:
            logger.error(f"Failed to set up file handler for logging: {e}", exc_info=True)

    if not testing_mode or log_level <= logging.DEBUG:
        logger.info(f"Logging initialized. Log file: {LOG_FILE_PATH}")

    return logger
