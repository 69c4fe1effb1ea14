"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for loan servicing operations.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "action": getattr(record, 'action', None),
            "loan_id": getattr(record, 'loan_id', None),
            "emi_id": getattr(record, 'emi_id', None),
            "user_id": getattr(record, 'user_id', None),
            "extra": getattr(record, 'extra', None)
        }

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "loan_engine",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup logging for the engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the logger; module loggers under it inherit the handler
        log_format: "json" for structured output, anything else for plain text
        log_file: Optional file path, stdout when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        ))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def setup_logging_from_config(cfg=None) -> logging.Logger:
    """Configure the package logger from LoanEngineConfig"""
    if cfg is None:
        from .config import get_config
        cfg = get_config()
    return setup_logging(level=cfg.log_level, log_format=cfg.log_format, log_file=cfg.log_file)


def log_action(logger: logging.Logger, level: str, message: str,
               action: Optional[str] = None, loan_id: Optional[str] = None,
               emi_id: Optional[str] = None, user_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a servicing action with structured fields.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        action: Action being performed (e.g. "payment.recorded")
        loan_id: Loan the action touched
        emi_id: EMI the action touched
        user_id: Operator performing the action
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno, __name__, 0, message, (), None
    )

    if action:
        record.action = action
    if loan_id:
        record.loan_id = loan_id
    if emi_id:
        record.emi_id = emi_id
    if user_id:
        record.user_id = user_id
    if extra:
        record.extra = extra

    logger.handle(record)
