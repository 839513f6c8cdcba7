"""
Per-job execution logs: one append-only file per job, readable while it is written
"""

import logging
import os
import threading
from pathlib import Path
from typing import Optional

from .errors import IOFailure

logger = logging.getLogger("docqueue.joblog")

# Milestone lines are synced to disk; engine chatter is only flushed
DURABLE_PREFIXES = ("==>", "ERROR:", "WARNING:")


class JobLog:
    """Single-writer log channel for one job; every line is visible to readers once appended"""

    def __init__(self, job_id: str, path: Path):
        self.job_id = job_id
        self.path = path
        self._lock = threading.Lock()
        try:
            self._fh = open(path, "w", encoding="utf-8")
        except OSError as e:
            raise IOFailure(f"cannot create log file {path}: {e}") from e

    def append(self, line: str):
        if not line.endswith("\n"):
            line += "\n"
        with self._lock:
            if self._fh.closed:
                return
            try:
                self._fh.write(line)
                self._fh.flush()
                if line.startswith(DURABLE_PREFIXES):
                    os.fsync(self._fh.fileno())
            except OSError as e:
                # The job keeps running; the process log records the loss
                logger.warning("Job log write failed", extra={
                    "component": "joblog",
                    "job_id": self.job_id,
                    "error": str(e),
                })

    def close(self):
        with self._lock:
            if self._fh.closed:
                return
            try:
                self._fh.flush()
                os.fsync(self._fh.fileno())
            except OSError as e:
                logger.warning("Job log sync failed", extra={
                    "component": "joblog",
                    "job_id": self.job_id,
                    "error": str(e),
                })
            finally:
                self._fh.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class JobLogStore:
    """Locates, opens, reads and removes job log files under one directory"""

    def __init__(self, logs_dir: Path):
        self.logs_dir = Path(logs_dir)

    def ensure_dirs(self):
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def path(self, job_id: str) -> Path:
        return self.logs_dir / f"{job_id}.log"

    def open(self, job_id: str) -> JobLog:
        """Create or truncate the job's log file"""
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailure(f"cannot create log directory {self.logs_dir}: {e}") from e
        return JobLog(job_id, self.path(job_id))

    def read(self, job_id: str) -> Optional[str]:
        """Snapshot of the current log content, None if logging has not started"""
        try:
            with open(self.path(job_id), "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def remove(self, job_id: str):
        try:
            self.path(job_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Job log removal failed", extra={
                "component": "joblog",
                "job_id": job_id,
                "error": str(e),
            })
