"""
Structured JSON logging configuration.

Configures the root logger once so every ``logging.getLogger(__name__)``
in core/ and gatekeeper/ shares the same handlers.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from config.settings import AppSettings, get_settings


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for attr in ('request_id', 'endpoint', 'method', 'status_code',
                     'duration_ms', 'remote_addr', 'error_id'):
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        return json.dumps(log_entry)


def configure_logging(app=None, settings: Optional[AppSettings] = None):
    """Configure logging from LOG_LEVEL / LOG_FORMAT / LOG_FILE.

    Args:
        app: Optional Flask app whose logger will be updated.
        settings: Settings to read; defaults to get_settings().

    Returns:
        The configured root logger.
    """
    settings = settings or get_settings()
    log_level = settings.log_level.upper()

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level, logging.INFO))
    logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)

    if settings.log_format == 'json':
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    logger.addHandler(console_handler)

    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    # Flask's logger propagates to the root handlers
    if app is not None:
        app.logger.handlers = []
        app.logger.setLevel(logger.level)

    return logger
