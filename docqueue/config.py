"""
Configuration module for the document translation job service
"""

import os
from pathlib import Path

def env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable"""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")

API_VERSION = os.getenv("APP_VERSION", "1.0.0")

# Server configuration
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8080"))

# Persisted state layout
DATA_DIR = Path(os.getenv("DATA_DIR", "/tmp/babeldoc"))
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(DATA_DIR / "uploads")))
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", str(DATA_DIR / "outputs")))
LOGS_DIR = Path(os.getenv("LOGS_DIR", str(DATA_DIR / "logs")))
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'tasks.db'}")

# Submission configuration
MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", str(100 << 20)))  # 100 MB
ALLOWED_EXTENSION = os.getenv("ALLOWED_EXTENSION", ".pdf").lower()
DEFAULT_LANG_IN = os.getenv("DEFAULT_LANG_IN", "en")
DEFAULT_LANG_OUT = os.getenv("DEFAULT_LANG_OUT", "zh")

# Engine configuration
ENGINE_COMMAND = os.getenv("ENGINE_COMMAND", "babeldoc")
OUTPUT_PATTERN = os.getenv("OUTPUT_PATTERN", "*.pdf")
DEFAULT_OPENAI_MODEL = os.getenv("DEFAULT_OPENAI_MODEL", "gpt-4o-mini")

# Queue and worker configuration
QUEUE_MAX_DEPTH = int(os.getenv("QUEUE_MAX_DEPTH", "100"))
WORKER_POOL_SIZE = int(os.getenv("WORKER_POOL_SIZE", "1"))
QUEUE_RETRY_AFTER_SECONDS = int(os.getenv("QUEUE_RETRY_AFTER_SECONDS", "5"))
REQUEUE_ON_STARTUP: bool = env_bool("REQUEUE_ON_STARTUP", True)

# Optional browser UI
STATIC_DIR = Path(os.getenv("STATIC_DIR", "./web/static"))

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")
HTTP_LOG_EXCLUDE_PATHS = set(os.getenv("HTTP_LOG_EXCLUDE_PATHS", "/healthz,/metrics/prometheus").split(","))
