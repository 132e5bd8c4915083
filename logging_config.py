"""
Logging setup shared by the API process and the worker process.

Modules log through ``logging.getLogger(__name__)``; this module only wires
handlers onto the root logger once per process.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None, console: bool = True) -> None:
    """Install console (rich) and optional file handlers on the root logger."""
    root = logging.getLogger()
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(numeric_level)
    root.handlers.clear()

    if console:
        console_handler = RichHandler(show_time=True, show_path=False, rich_tracebacks=True)
        console_handler.setLevel(numeric_level)
        root.addHandler(console_handler)

    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(file_handler)

    # Driver chatter drowns out job logs at INFO
    for noisy in ("pymongo", "botocore", "boto3", "urllib3", "PIL"):
        logging.getLogger(noisy).setLevel(max(numeric_level, logging.WARNING))
