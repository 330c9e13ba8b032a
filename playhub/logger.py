import logging
import sys
from pathlib import Path

import platformdirs


def get_log_dir() -> Path:
    """Directory for the application log file, next to the executable when frozen."""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent
    return Path(platformdirs.user_log_dir("PlayHub", appauthor=False))


def setup_logger(log_file_name="playhub.log"):
    """
    Setups the initial logger.
    param: log_file_name: filename to be used for the logfile.
    return: logger instance created.
    """
    logger = logging.getLogger("PlayHub")

    # Check if the logger has already been configured
    if not logger.handlers:
        logger.setLevel(logging.DEBUG)

        log_format = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(log_format)
        logger.addHandler(console_handler)

        try:
            log_dir = get_log_dir()
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_dir / log_file_name, encoding="utf-8")
            file_handler.setFormatter(log_format)
            logger.addHandler(file_handler)
        except OSError as e:
            # Read-only install locations still get console output
            logger.warning(f"File logging disabled: {e}")

        # Prevent propagation to avoid duplicate logs
        logger.propagate = False

    return logger


if __name__ == "__main__":
    logger = setup_logger()
    logger.info("This is a test log message")
