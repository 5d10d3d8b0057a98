
import logging
from logging.handlers import TimedRotatingFileHandler
import os
from typing import Optional

from .config import get_settings

file_handler = None


def setup_logging(log_dir: Optional[str] = None, level: Optional[str] = None) -> str:
    global file_handler
    cfg = get_settings()
    log_dir = os.path.abspath(log_dir or cfg.LOG_DIR)
    log_file = os.path.join(log_dir, 'ops_safety.log')
    os.makedirs(log_dir, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or cfg.LOG_LEVEL).upper(), logging.INFO))
    formatter = logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s')
    # Close previous file handler if it exists
    if file_handler:
        file_handler.close()
        file_handler = None
    # Daily rotation, keep 14 days
    file_handler = TimedRotatingFileHandler(log_file, when="midnight", interval=1, backupCount=14)
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.handlers = [file_handler, stream_handler]
    root_logger.info("[BOOT] Logging system initialized and writing to %s", log_file)
    return log_file


def close_logging():
    global file_handler
    if file_handler:
        file_handler.close()
        file_handler = None
