import logging
import sys
import os
from datetime import datetime
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors each record by level."""

    cyan = "\x1b[36m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    FORMATS = {
        logging.DEBUG: cyan + LOG_FORMAT + reset,
        logging.INFO: green + LOG_FORMAT + reset,
        logging.WARNING: yellow + LOG_FORMAT + reset,
        logging.ERROR: red + LOG_FORMAT + reset,
        logging.CRITICAL: bold_red + LOG_FORMAT + reset,
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, LOG_FORMAT)
        formatter = logging.Formatter(log_fmt, datefmt=DATE_FORMAT)
        return formatter.format(record)


def setup_logging(level=logging.INFO, log_dir: Optional[str] = "logs"):
    """
    Console (stderr, colored) plus a daily log file under ``log_dir``.
    Pass ``log_dir=None`` to skip the file handler.
    """
    root_logger = logging.getLogger()

    # Clear existing handlers to prevent duplicate logs
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    # stderr keeps stdout free for the results summary
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(
            os.path.join(log_dir, f"heal_{datetime.now().strftime('%Y%m%d')}.log"),
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    for logger_name in ["ci_healer", "main"]:
        named = logging.getLogger(logger_name)
        named.setLevel(level)
        named.propagate = True

    # httpx logs every poll request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    root_logger.debug("Logging initialized (console%s).", " + file" if log_dir else "")
