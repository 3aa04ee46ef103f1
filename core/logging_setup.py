"""
PropelAI Structured Logging
Text or JSON log output for the orchestrator processes
"""

import os
import json
import logging
from datetime import datetime


# Attributes callers attach with ``extra=`` to give a record pipeline context
CONTEXT_FIELDS = ("job_id", "stage", "volume", "step_id", "event")


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging in production"""

    def format(self, record):
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        return json.dumps(log_data, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plain text formatter that appends pipeline context when present"""

    def format(self, record):
        base = super().format(record)
        context = [
            f"{name}={getattr(record, name)}"
            for name in CONTEXT_FIELDS
            if hasattr(record, name)
        ]
        if context:
            return f"{base} [{' '.join(context)}]"
        return base


def setup_logging(logger_name: str = "propelai") -> logging.Logger:
    """Configure logging based on environment"""
    log_format = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Remove existing handlers
    logger.handlers = []

    handler = logging.StreamHandler()

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ContextTextFormatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        ))

    logger.addHandler(handler)

    # Module loggers are named after their packages; route them through the same handler
    for package in ("core", "database", "checkpointing", "agents", "pipeline", "api"):
        child = logging.getLogger(package)
        child.setLevel(logger.level)
        child.handlers = [handler]
        child.propagate = False

    return logger
