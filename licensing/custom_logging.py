"""
Structured logging for POSPlus Licensing

JSON formatter and handler setup shared by the issuer tools and the client
license manager. Modules log through ``logging.getLogger(__name__)``; this
module only decides where records go.
"""

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

ROOT_LOGGER_NAME = "licensing"
MAX_LOG_FILE_SIZE = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

# LogRecord attributes that are not user supplied extra fields
_RESERVED_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'exc_info', 'exc_text',
    'stack_info', 'message', 'asctime', 'taskName',
})

_HANDLER_MARKER = "_licensing_handler"


class JsonFormatter(logging.Formatter):
    """
    Formatter producing one JSON object per record.

    Standard fields plus every field passed through ``extra``; the exception
    traceback is included when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_entry[key] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


def _create_text_formatter() -> logging.Formatter:
    return logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    )


def _create_console_formatter() -> logging.Formatter:
    return logging.Formatter('%(levelname)s - %(name)s - %(message)s')


def _mark(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_MARKER, True)
    return handler


def setup_logging(log_dir: Optional[Union[str, Path]] = None, level: str = "INFO",
                  json_logs: bool = True) -> logging.Logger:
    """
    Configure the ``licensing`` logger

    Installs a console handler (WARNING and above) and, when ``log_dir`` is
    given, a rotating text log plus a rotating JSON log. Calling it again
    replaces the handlers it installed earlier instead of adding duplicates.

    Args:
        log_dir: Directory for log files (console only when None)
        level: Logger level name
        json_logs: Also write the JSON log file

    Returns:
        The configured ``licensing`` logger
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(_create_console_formatter())
    console_handler.setLevel(logging.WARNING)
    root.addHandler(_mark(console_handler))

    if log_dir is not None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        text_handler = logging.handlers.RotatingFileHandler(
            log_path / f"{ROOT_LOGGER_NAME}.log",
            maxBytes=MAX_LOG_FILE_SIZE,
            backupCount=LOG_BACKUP_COUNT,
            encoding='utf-8',
        )
        text_handler.setFormatter(_create_text_formatter())
        text_handler.setLevel(logging.INFO)
        root.addHandler(_mark(text_handler))

        if json_logs:
            json_handler = logging.handlers.RotatingFileHandler(
                log_path / f"{ROOT_LOGGER_NAME}.json.log",
                maxBytes=MAX_LOG_FILE_SIZE,
                backupCount=LOG_BACKUP_COUNT,
                encoding='utf-8',
            )
            json_handler.setFormatter(JsonFormatter())
            json_handler.setLevel(logging.DEBUG)
            root.addHandler(_mark(json_handler))

    return root


def setup_logging_from_config(config) -> logging.Logger:
    """Configure logging from a LicensingConfig"""
    return setup_logging(
        log_dir=config.paths.logs_dir,
        level=config.logging.level,
        json_logs=config.logging.json_logs,
    )
