"""
Job store - durable SQLAlchemy-backed record of every job
"""

import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .db import init_db, make_engine, make_session_factory, session_scope
from .errors import DuplicateID, InvalidTransition, NotFound
from .models.job import Job, JobStatus, TRANSITIONS

logger = logging.getLogger("docqueue.store")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """Persists job records; writes are serialized, reads run concurrently"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = make_engine(database_url)
        self._session_factory = make_session_factory(self.engine)
        self._write_lock = threading.RLock()
        init_db(self.engine)
        logger.info("Job store initialized", extra={"component": "store", "url": database_url})

    def close(self):
        self.engine.dispose()

    def create(self, job: Job) -> Job:
        """Persist a new record with status queued"""
        job.status = JobStatus.QUEUED.value
        if job.created_at is None:
            job.created_at = utcnow()
        if job.params is None:
            job.params = {}
        job.started_at = None
        job.completed_at = None
        job.error = None
        job.output_file = None
        job.output_files = []

        with self._write_lock:
            try:
                with session_scope(self._session_factory) as s:
                    s.add(job)
            except IntegrityError:
                raise DuplicateID(f"job {job.id} already exists")

        logger.info("Job created", extra={"component": "store", "job_id": job.id})
        return job

    def get(self, job_id: str) -> Job:
        with session_scope(self._session_factory) as s:
            job = s.get(Job, job_id)
            if job is None:
                raise NotFound(f"job {job_id} not found")
            return job

    def list(self, status: Optional[str] = None) -> List[Job]:
        """All records, most recent first"""
        stmt = select(Job).order_by(Job.created_at.desc(), Job.id.desc())
        if status is not None:
            stmt = stmt.where(Job.status == JobStatus(status).value)
        with session_scope(self._session_factory) as s:
            return list(s.scalars(stmt))

    def list_fifo(self, status: Union[JobStatus, str]) -> List[Job]:
        """Records in one status, oldest first (queue recovery order)"""
        stmt = (
            select(Job)
            .where(Job.status == JobStatus(status).value)
            .order_by(Job.created_at.asc(), Job.id.asc())
        )
        with session_scope(self._session_factory) as s:
            return list(s.scalars(stmt))

    def update_status(
        self,
        job_id: str,
        status: Union[JobStatus, str],
        *,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        error: Optional[str] = None,
        outputs: Optional[Sequence[str]] = None,
    ) -> Optional[Job]:
        """
        Move a job along the state machine and persist it.

        Returns the updated record. A late update for a deleted job returns
        None, and an update for an already-terminal job is ignored and
        returns the stored record unchanged.
        """
        new_status = JobStatus(status).value

        with self._write_lock:
            with session_scope(self._session_factory) as s:
                job = s.get(Job, job_id)
                if job is None:
                    logger.warning("Status update for missing job ignored", extra={
                        "component": "store",
                        "job_id": job_id,
                        "status": new_status,
                    })
                    return None

                if job.is_terminal:
                    logger.warning("Status update for terminal job ignored", extra={
                        "component": "store",
                        "job_id": job_id,
                        "current": job.status,
                        "status": new_status,
                    })
                    return job

                if new_status not in TRANSITIONS.get(job.status, frozenset()):
                    raise InvalidTransition(f"{job.status} -> {new_status} for job {job_id}")

                if new_status == JobStatus.RUNNING.value:
                    job.started_at = started_at or utcnow()

                elif new_status == JobStatus.SUCCESS.value:
                    files = list(outputs or [])
                    if not files:
                        raise InvalidTransition(f"success without outputs for job {job_id}")
                    job.output_files = files
                    job.output_file = files[0]
                    job.error = None
                    job.completed_at = completed_at or utcnow()

                elif new_status == JobStatus.FAILED.value:
                    job.error = error or "unknown error"
                    job.output_files = []
                    job.output_file = None
                    job.completed_at = completed_at or utcnow()

                job.status = new_status

        logger.info("Job status changed", extra={
            "component": "store",
            "job_id": job_id,
            "status": new_status,
        })
        return job

    def delete(self, job_id: str) -> None:
        with self._write_lock:
            with session_scope(self._session_factory) as s:
                job = s.get(Job, job_id)
                if job is None:
                    raise NotFound(f"job {job_id} not found")
                s.delete(job)

        logger.info("Job deleted", extra={"component": "store", "job_id": job_id})
