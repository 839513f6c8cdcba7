# tests/conftest.py
import os
import sys
import textwrap

import pytest

from docqueue.artifacts import ArtifactManager
from docqueue.engine import TranslationEngine
from docqueue.joblog import JobLogStore
from docqueue.lifecycle import JobService
from docqueue.queue_manager import QueueManager
from docqueue.store import JobStore

TEST_API_KEY = "sk-test-environment-key"

# Stand-in for the babeldoc CLI: same flags, writes PDFs into --output
FAKE_ENGINE = textwrap.dedent("""
    import argparse
    import os
    import sys
    import time
    from pathlib import Path

    parser = argparse.ArgumentParser()
    parser.add_argument("--files", required=True)
    parser.add_argument("--lang-in")
    parser.add_argument("--lang-out", default="zh")
    parser.add_argument("--output", required=True)
    parser.add_argument("--pages")
    parser.add_argument("--openai", action="store_true")
    parser.add_argument("--openai-api-key")
    parser.add_argument("--openai-model")
    parser.add_argument("--openai-base-url")
    parser.add_argument("--fake-mode", default="ok")
    parser.add_argument("--fake-sleep", type=float, default=0)
    args, extra = parser.parse_known_args()

    src = Path(args.files)
    if not src.is_file():
        print("input not found: " + str(src), file=sys.stderr)
        sys.exit(2)
    if not (args.openai_api_key or os.environ.get("OPENAI_API_KEY")):
        print("no api key", file=sys.stderr)
        sys.exit(4)

    print("translating " + src.name + " " + str(args.lang_in) + " -> " + args.lang_out, flush=True)
    print("model " + str(args.openai_model), flush=True)
    print("pages " + str(args.pages), flush=True)
    print("extra " + " ".join(extra), flush=True)
    print("progress 100%", file=sys.stderr, flush=True)
    if args.fake_sleep:
        time.sleep(args.fake_sleep)

    if args.fake_mode == "fail":
        print("boom", file=sys.stderr)
        sys.exit(3)
    if args.fake_mode == "empty":
        sys.exit(0)

    out = Path(args.output)
    (out / (src.stem + "." + args.lang_out + ".mono.pdf")).write_bytes(b"%PDF-1.4 translated")
    if args.fake_mode == "dual":
        (out / (src.stem + "." + args.lang_out + ".dual.pdf")).write_bytes(b"%PDF-1.4 dual")
        (out / "glossary.csv").write_text("ignored")
""")

PDF_BYTES = b"%PDF-1.4\n% test document\n"


@pytest.fixture
def fake_engine(tmp_path):
    """Command line running the fake engine with the current interpreter"""
    script = tmp_path / "fake_babeldoc.py"
    script.write_text(FAKE_ENGINE)
    return [sys.executable, str(script)]


@pytest.fixture
def engine_env():
    env = {k: v for k, v in os.environ.items() if not k.startswith("OPENAI_")}
    env["OPENAI_API_KEY"] = TEST_API_KEY
    return env


@pytest.fixture
def store(tmp_path):
    job_store = JobStore(f"sqlite:///{tmp_path / 'tasks.db'}")
    yield job_store
    job_store.close()


@pytest.fixture
def artifacts(tmp_path):
    manager = ArtifactManager(tmp_path / "uploads", tmp_path / "outputs", max_upload_size=1 << 20)
    manager.ensure_dirs()
    return manager


@pytest.fixture
def job_logs(tmp_path):
    logs = JobLogStore(tmp_path / "logs")
    logs.ensure_dirs()
    return logs


@pytest.fixture
def make_service(store, artifacts, job_logs, fake_engine, engine_env):
    """Factory for a JobService on temporary directories; nothing is started"""
    def _make(environ=None, max_depth=10, retry_after=7):
        engine = TranslationEngine(
            artifacts,
            command=fake_engine,
            environ=engine_env if environ is None else environ,
        )
        queue = QueueManager(max_depth=max_depth, worker_pool_size=1, retry_after_seconds=retry_after)
        return JobService(store, artifacts, job_logs, engine, queue)
    return _make


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def client(service):
    """TestClient whose lifespan starts the worker against the temporary service"""
    from fastapi.testclient import TestClient
    from docqueue.main import create_app

    app = create_app(service=service, requeue=True, static_dir=None)
    with TestClient(app) as test_client:
        yield test_client
