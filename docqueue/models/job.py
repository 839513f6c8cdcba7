from enum import Enum

from sqlalchemy import Column, String, DateTime, JSON, Text, Index
from ..db import Base


class JobStatus(str, Enum):
    """Job status states"""
    QUEUED = "queued"      # Accepted, waiting for a worker
    RUNNING = "running"    # Engine invocation in progress
    SUCCESS = "success"    # At least one output finalized
    FAILED = "failed"      # Terminal error, see Job.error


TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS.value, JobStatus.FAILED.value})

# Allowed forward transitions of the job state machine, keyed by stored value
TRANSITIONS = {
    JobStatus.QUEUED.value: frozenset({JobStatus.RUNNING.value}),
    JobStatus.RUNNING.value: frozenset({JobStatus.SUCCESS.value, JobStatus.FAILED.value}),
    JobStatus.SUCCESS.value: frozenset(),
    JobStatus.FAILED.value: frozenset(),
}


class Job(Base):
    __tablename__ = "tasks"
    id = Column(String(64), primary_key=True)
    filename = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=JobStatus.QUEUED.value)  # queued|running|success|failed
    lang_in = Column(String(32), nullable=True)
    lang_out = Column(String(32), nullable=True)
    pages = Column(Text, nullable=True)
    params = Column(JSON, nullable=True)  # ordered str -> str engine parameters
    created_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    output_file = Column(Text, nullable=True)  # default download, first of output_files
    output_files = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_tasks_created_at", "created_at"),
        Index("idx_tasks_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<Job {self.id} {self.status}>"
