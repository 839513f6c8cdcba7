"""
Job lifecycle controller

Accepts submissions, drives each job through queued -> running ->
success|failed, and serves the query, log, download and delete operations.
"""

import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Dict, List, Mapping, Optional

from .artifacts import ArtifactManager
from .engine import TranslationEngine
from .errors import IOFailure, JobError, NotFound, QueueFull, ValidationError
from .joblog import JobLog, JobLogStore
from .models.job import Job, JobStatus
from .queue_manager import QueueManager
from .services.prometheus_metrics import prometheus_metrics
from .store import JobStore, utcnow

logger = logging.getLogger("docqueue.lifecycle")

LOG_PLACEHOLDER = "Log file does not exist or the job has not started yet"


def new_job_id(now: Optional[datetime] = None) -> str:
    """Timestamp-prefixed, sortable, unique job identifier"""
    now = now or datetime.now()
    return f"{now:%Y%m%d-%H%M%S}_{uuid.uuid4().hex[:8]}"


class JobService:
    """State machine tying the store, artifacts, job logs, engine and queue together"""

    def __init__(
        self,
        store: JobStore,
        artifacts: ArtifactManager,
        logs: JobLogStore,
        engine: TranslationEngine,
        queue: QueueManager,
        allowed_extension: str = ".pdf",
        default_lang_in: str = "en",
        default_lang_out: str = "zh",
    ):
        self.store = store
        self.artifacts = artifacts
        self.logs = logs
        self.engine = engine
        self.queue = queue
        self.allowed_extension = allowed_extension.lower()
        self.default_lang_in = default_lang_in
        self.default_lang_out = default_lang_out

    # =========================================
    # Startup / shutdown
    # =========================================

    async def start(self, requeue: bool = True):
        self.artifacts.ensure_dirs()
        self.logs.ensure_dirs()
        self.queue.initialize()
        if requeue:
            self.recover()
        await self.queue.start_workers(self.process_job)

    async def stop(self):
        await self.queue.stop_workers()

    def recover(self) -> int:
        """Re-enqueue jobs left queued by a previous process; running ones are only reported"""
        stuck = self.store.list(status=JobStatus.RUNNING)
        if stuck:
            logger.warning("Jobs left running by a previous process", extra={
                "component": "lifecycle",
                "job_ids": [j.id for j in stuck],
            })

        requeued = 0
        for job in self.store.list_fifo(JobStatus.QUEUED):
            if not self.queue.enqueue(job.id):
                logger.warning("Queue full during recovery; remaining jobs stay queued", extra={
                    "component": "lifecycle",
                    "requeued": requeued,
                })
                break
            requeued += 1

        if requeued:
            logger.info("Queued jobs recovered", extra={"component": "lifecycle", "count": requeued})
        return requeued

    # =========================================
    # Submission
    # =========================================

    def validate_upload(self, filename: Optional[str]):
        if not filename:
            raise ValidationError("Error retrieving file")
        if not filename.lower().endswith(self.allowed_extension):
            raise ValidationError(f"Only {self.allowed_extension.lstrip('.').upper()} files are allowed")

    def submit(
        self,
        filename: Optional[str],
        stream: BinaryIO,
        lang_in: Optional[str] = None,
        lang_out: Optional[str] = None,
        pages: Optional[str] = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> Job:
        """
        Create a queued job for an uploaded document.

        Raises ValidationError for a bad upload and QueueFull when the queue
        cannot take the job; in both cases nothing is left behind.
        """
        job = self.accept(filename, stream, lang_in=lang_in, lang_out=lang_out, pages=pages, params=params)
        self.schedule(job)
        return job

    def accept(
        self,
        filename: Optional[str],
        stream: BinaryIO,
        lang_in: Optional[str] = None,
        lang_out: Optional[str] = None,
        pages: Optional[str] = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> Job:
        """Validate, store the upload and persist the record; blocking file and DB I/O only"""
        try:
            self.validate_upload(filename)
        except ValidationError:
            prometheus_metrics.increment_jobs_rejected("validation")
            raise

        job_id = new_job_id()
        try:
            self.artifacts.store_input(job_id, filename, stream)
        except ValidationError:
            prometheus_metrics.increment_jobs_rejected("validation")
            raise

        job = Job(
            id=job_id,
            filename=filename,
            lang_in=(lang_in or "").strip() or self.default_lang_in,
            lang_out=(lang_out or "").strip() or self.default_lang_out,
            pages=(pages or "").strip() or None,
            params=dict(params or {}),
            created_at=utcnow(),
        )

        try:
            self.store.create(job)
        except Exception:
            self.artifacts.remove(job_id, filename, [])
            raise
        return job

    def schedule(self, job: Job):
        """Hand an accepted job to the queue; must run on the event loop"""
        if not self.queue.enqueue(job.id):
            self.store.delete(job.id)
            self.artifacts.remove(job.id, job.filename, [])
            prometheus_metrics.increment_jobs_rejected("queue_full")
            raise QueueFull("job queue is full", retry_after=self.queue.retry_after_seconds)

        prometheus_metrics.increment_jobs_submitted()
        logger.info("Job submitted", extra={
            "component": "lifecycle",
            "job_id": job.id,
            "filename": job.filename,
            "lang_in": job.lang_in,
            "lang_out": job.lang_out,
        })

    # =========================================
    # Execution
    # =========================================

    async def process_job(self, job_id: str):
        """Worker entry point: run one dequeued job to a terminal state"""
        try:
            job = self.store.get(job_id)
        except NotFound:
            logger.info("Dequeued job no longer exists", extra={"component": "lifecycle", "job_id": job_id})
            return
        if job.status != JobStatus.QUEUED.value:
            logger.warning("Dequeued job is not queued; skipping", extra={
                "component": "lifecycle",
                "job_id": job_id,
                "status": job.status,
            })
            return

        job = self.store.update_status(job_id, JobStatus.RUNNING)
        if job is None:
            return
        prometheus_metrics.job_started()
        started = time.monotonic()

        job_log: Optional[JobLog] = None
        try:
            job_log = self.logs.open(job_id)
            status = await self._execute(job, job_log)
        except JobError as e:
            status = self._fail(job, e, job_log)
        except Exception as e:
            logger.exception("Unexpected error while processing job", extra={
                "component": "lifecycle",
                "job_id": job_id,
            })
            prometheus_metrics.increment_worker_errors(1)
            status = self._fail(job, f"InternalError: {e}", job_log)
        finally:
            self.artifacts.cleanup_workspace(job_id)
            if job_log is not None:
                job_log.close()

        prometheus_metrics.job_finished(status, time.monotonic() - started)

    async def _execute(self, job: Job, job_log: JobLog) -> str:
        log = job_log.append
        log(f"==> Starting translation job {job.id}")
        log(f"==> File: {job.filename}")
        log(f"==> Languages: {job.lang_in} -> {job.lang_out}")

        input_path = self.artifacts.locate_input(job.id, job.filename)
        if not input_path.exists():
            raise IOFailure(f"input file {input_path.name} is missing")
        workspace = self.artifacts.prepare_workspace(job.id)

        result = await self.engine.run(job, input_path, workspace, log)
        if not result.ok:
            # The engine already wrote the cause to the job log
            return self._fail(job, result.error, None)

        finalized = self.artifacts.finalize(job.id, result.outputs, log=log)
        if not finalized:
            raise IOFailure("could not save any output file")

        updated = self.store.update_status(job.id, JobStatus.SUCCESS, outputs=finalized)
        if updated is None:
            # Deleted while running: nothing references these files any more
            self.artifacts.remove(job.id, None, finalized)
            log("==> Job was deleted while running; outputs discarded")
            return JobStatus.SUCCESS.value

        log("")
        log("==> Job completed!")
        logger.info("Job succeeded", extra={
            "component": "lifecycle",
            "job_id": job.id,
            "outputs": finalized,
        })
        return JobStatus.SUCCESS.value

    def _fail(self, job: Job, error, job_log: Optional[JobLog]) -> str:
        message = str(error)
        if job_log is not None:
            job_log.append(f"ERROR: {message}")
        self.store.update_status(job.id, JobStatus.FAILED, error=message)
        logger.warning("Job failed", extra={
            "component": "lifecycle",
            "job_id": job.id,
            "error": message,
        })
        return JobStatus.FAILED.value

    # =========================================
    # Queries
    # =========================================

    def get(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def list(self) -> List[Job]:
        return self.store.list()

    def read_log(self, job_id: str) -> str:
        content = self.logs.read(job_id)
        if content is None:
            return LOG_PLACEHOLDER
        return content

    def resolve_download(self, job_id: str, name: Optional[str] = None) -> Path:
        """Path of a finalized output that belongs to the job"""
        job = self.store.get(job_id)
        outputs = job.output_files or []
        if name:
            if name not in outputs:
                raise NotFound(f"file {name} does not belong to job {job_id}")
        else:
            name = job.output_file or (outputs[0] if outputs else None)
            if not name:
                raise NotFound(f"job {job_id} has no output")

        try:
            path = self.artifacts.output_path(name)
        except ValidationError:
            raise NotFound(f"file {name} not found")
        if not path.is_file():
            raise NotFound(f"file {name} not found")
        return path

    def delete(self, job_id: str):
        """Remove a job's files, log and record; stale files never block the removal"""
        job = self.store.get(job_id)
        self.artifacts.remove(job_id, job.filename, job.output_files or [])
        self.logs.remove(job_id)
        self.store.delete(job_id)
        logger.info("Job removed", extra={"component": "lifecycle", "job_id": job_id})

    def stats(self) -> Dict[str, object]:
        counts: Dict[str, int] = {s.value: 0 for s in JobStatus}
        for job in self.store.list():
            counts[job.status] = counts.get(job.status, 0) + 1
        return {"jobs": counts, "queue": self.queue.get_queue_stats()}
