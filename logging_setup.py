import logging
import sys
from typing import Union

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that only reach the console at WARNING+
NOISY_LOGGERS = ("uvicorn.access", "passlib", "pymongo", "httpx", "httpcore", "multipart")


def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """
    Configure the root logger with a single stderr handler.

    Safe to call more than once: existing root handlers are replaced rather
    than stacked.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.captureWarnings(True)
