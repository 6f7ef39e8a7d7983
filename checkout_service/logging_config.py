"""
logging_config.py — Log setup shared by the service and the mock gateway

Every record carries the worker PID, since uvicorn may run several workers
writing to the same stream. Driver and client libraries are held at WARNING.
"""

import logging
import sys

LOG_FORMAT = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(message)s'

QUIET_LOGGERS = ("pika", "httpx", "httpcore", "pymongo")


def setup_logging(level: str = "INFO", log_file: str = ""):
    """
    Installs root handlers: stdout always, plus `log_file` when it is set.

    Unknown level names fall back to INFO.
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name):
    return logging.getLogger(name)
