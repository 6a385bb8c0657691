"""Process-wide logging configuration, applied once by app.py."""

import logging
import os


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: int | str = logging.INFO, log_dir: str | None = None) -> logging.Logger:
    """
    Attach a console handler (and a file handler under `log_dir`) to the
    `prism` logger. Calling it again does not add duplicate handlers.
    """
    logger = logging.getLogger("prism")
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter(LOG_FORMAT)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(os.path.join(log_dir, "prism.log"), encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger
