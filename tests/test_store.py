"""
Tests for the SQLAlchemy job store
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine

from docqueue.errors import DuplicateID, InvalidTransition, NotFound
from docqueue.models.job import Job, JobStatus
from docqueue.store import JobStore


def make_job(job_id, created_at=None, **fields):
    return Job(
        id=job_id,
        filename=fields.pop("filename", "report.pdf"),
        lang_in="en",
        lang_out="zh",
        created_at=created_at or datetime.now(timezone.utc),
        **fields,
    )


class TestJobStore:
    """CRUD and state machine behaviour of JobStore."""

    def test_create_forces_queued(self, store):
        job = make_job("j1", params={"qps": "4"})
        job.status = JobStatus.SUCCESS.value
        job.error = "stale"

        store.create(job)
        saved = store.get("j1")

        assert saved.status == "queued"
        assert saved.error is None
        assert saved.started_at is None
        assert saved.completed_at is None
        assert saved.output_files == []
        assert saved.params == {"qps": "4"}

    def test_create_duplicate_id(self, store):
        store.create(make_job("dup"))
        with pytest.raises(DuplicateID):
            store.create(make_job("dup"))

    def test_get_missing(self, store):
        with pytest.raises(NotFound):
            store.get("nope")

    def test_list_most_recent_first(self, store):
        base = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        store.create(make_job("old", created_at=base))
        store.create(make_job("new", created_at=base + timedelta(minutes=5)))
        store.create(make_job("mid", created_at=base + timedelta(minutes=1)))

        assert [j.id for j in store.list()] == ["new", "mid", "old"]
        assert [j.id for j in store.list_fifo(JobStatus.QUEUED)] == ["old", "mid", "new"]

    def test_list_by_status(self, store):
        store.create(make_job("a"))
        store.create(make_job("b"))
        store.update_status("b", JobStatus.RUNNING)

        assert [j.id for j in store.list(status="running")] == ["b"]
        assert [j.id for j in store.list(status=JobStatus.QUEUED)] == ["a"]

    def test_running_sets_started_at(self, store):
        store.create(make_job("j1"))
        job = store.update_status("j1", JobStatus.RUNNING)

        assert job.status == "running"
        assert job.started_at is not None
        assert job.completed_at is None

    def test_success_records_outputs(self, store):
        store.create(make_job("j1"))
        store.update_status("j1", JobStatus.RUNNING)
        store.update_status("j1", JobStatus.SUCCESS, outputs=["j1_a.pdf", "j1_b.pdf"])

        job = store.get("j1")
        assert job.status == "success"
        assert job.output_files == ["j1_a.pdf", "j1_b.pdf"]
        assert job.output_file == "j1_a.pdf"
        assert job.error is None
        assert job.completed_at is not None

    def test_success_requires_outputs(self, store):
        store.create(make_job("j1"))
        store.update_status("j1", JobStatus.RUNNING)
        with pytest.raises(InvalidTransition):
            store.update_status("j1", JobStatus.SUCCESS, outputs=[])
        assert store.get("j1").status == "running"

    def test_failed_records_error(self, store):
        store.create(make_job("j1"))
        store.update_status("j1", JobStatus.RUNNING)
        store.update_status("j1", JobStatus.FAILED, error="ExecutionFailure: engine exit status 1")

        job = store.get("j1")
        assert job.status == "failed"
        assert job.error == "ExecutionFailure: engine exit status 1"
        assert job.output_files == []
        assert job.completed_at is not None

    def test_failed_without_message(self, store):
        store.create(make_job("j1"))
        store.update_status("j1", JobStatus.RUNNING)
        assert store.update_status("j1", JobStatus.FAILED).error == "unknown error"

    def test_queued_cannot_skip_running(self, store):
        store.create(make_job("j1"))
        with pytest.raises(InvalidTransition):
            store.update_status("j1", JobStatus.SUCCESS, outputs=["x.pdf"])

    def test_terminal_is_final(self, store):
        store.create(make_job("j1"))
        store.update_status("j1", JobStatus.RUNNING)
        store.update_status("j1", JobStatus.FAILED, error="boom")

        job = store.update_status("j1", JobStatus.RUNNING)
        assert job.status == "failed"
        assert store.get("j1").error == "boom"

    def test_update_deleted_job_is_noop(self, store):
        store.create(make_job("j1"))
        store.update_status("j1", JobStatus.RUNNING)
        store.delete("j1")

        assert store.update_status("j1", JobStatus.SUCCESS, outputs=["x.pdf"]) is None
        with pytest.raises(NotFound):
            store.get("j1")

    def test_delete_missing(self, store):
        with pytest.raises(NotFound):
            store.delete("nope")

    def test_records_survive_reopen(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'persist.db'}"
        first = JobStore(url)
        first.create(make_job("j1", params={"openai-model": "gpt-4o"}))
        first.close()

        second = JobStore(url)
        try:
            job = second.get("j1")
            assert job.status == "queued"
            assert job.params == {"openai-model": "gpt-4o"}
        finally:
            second.close()


class TestMigration:
    """Legacy tasks tables are upgraded in place."""

    def test_adds_missing_columns(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'legacy.db'}"
        legacy = create_engine(url)
        with legacy.begin() as conn:
            conn.exec_driver_sql(
                "CREATE TABLE tasks ("
                "id VARCHAR(64) PRIMARY KEY, filename TEXT NOT NULL, status VARCHAR(16) NOT NULL, "
                "lang_in VARCHAR(32), lang_out VARCHAR(32), pages TEXT, "
                "created_at DATETIME NOT NULL, started_at DATETIME, completed_at DATETIME, error TEXT)"
            )
            conn.exec_driver_sql(
                "INSERT INTO tasks (id, filename, status, lang_in, lang_out, created_at) "
                "VALUES ('old', 'a.pdf', 'success', 'en', 'zh', '2024-01-01 00:00:00.000000')"
            )
        legacy.dispose()

        store = JobStore(url)
        try:
            job = store.get("old")
            assert job.status == "success"
            assert job.params is None
            assert job.output_files is None

            store.create(make_job("new", params={"qps": "2"}))
            assert store.get("new").params == {"qps": "2"}
        finally:
            store.close()
