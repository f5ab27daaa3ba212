import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured = False


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure the root logger once for the whole process.

    The first call wins: the entrypoint configures logging before the app
    module is imported, and the app's own call must not override it.
    """
    global _configured
    if _configured:
        return

    root = logging.getLogger()
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    root.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # aiortc/aioice are very chatty at DEBUG
    logging.getLogger("aioice").setLevel(max(level, logging.INFO))
    logging.getLogger("aiortc").setLevel(max(level, logging.INFO))

    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
