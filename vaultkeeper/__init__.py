import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional


__version__ = '0.1.0'


def configure_logging(level: str = 'INFO', log_dir: Optional[str] = None):
    """Configure process logging (console, plus a rotating file when log_dir is set)"""

    log_level = getattr(logging, str(level).upper(), logging.INFO)

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'vaultkeeper.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # boto3 is chatty at DEBUG
    logging.getLogger('botocore').setLevel(max(log_level, logging.INFO))
    logging.getLogger('httpx').setLevel(max(log_level, logging.WARNING))

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")
