import logging
import logging.config
import os
import yaml
import json
from datetime import datetime, timezone
from typing import Optional
import contextvars

# Context variable for trace ID
trace_id_var = contextvars.ContextVar('trace_id', default=None)

# Attributes every LogRecord carries; anything else came from `extra`
_RESERVED = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName', 'taskName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'message', 'asctime',
    'component', 'job_id',
])

def get_trace_id() -> Optional[str]:
    """Get the current trace ID from context"""
    return trace_id_var.get()

class JsonFormatter(logging.Formatter):
    """JSON formatter with structured fields"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "trace_id": get_trace_id(),
            "job_id": getattr(record, 'job_id', None),
            "component": getattr(record, 'component', 'api'),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)

def _default_config(log_level: str, log_format: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JsonFormatter},
            "text": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": log_format,
                "stream": "ext://sys.stdout"
            }
        },
        "loggers": {
            "docqueue": {"level": log_level, "handlers": [], "propagate": True},
            "uvicorn": {"level": log_level, "handlers": [], "propagate": True},
            "uvicorn.error": {"level": log_level, "handlers": [], "propagate": True},
            "uvicorn.access": {"level": log_level, "handlers": [], "propagate": True},
        },
        "root": {
            "level": log_level,
            "handlers": ["console"]
        }
    }

def setup_logging(config_path: str = "LOGGING.yaml"):
    """Setup logging configuration from YAML file or environment"""

    log_format = os.getenv("LOG_FORMAT", "json")
    log_level = os.getenv("LOG_LEVEL", "INFO")
    if log_format not in ("json", "text"):
        log_format = "json"

    config = None
    if os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logging.getLogger("docqueue").warning("Could not load %s: %s", config_path, e)

    if not config:
        config = _default_config(log_level, log_format)

    logging.config.dictConfig(config)
    return config
