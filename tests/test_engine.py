"""
Tests for engine argument construction, credential resolution and subprocess supervision
"""

import pytest

from docqueue.engine import (
    TranslationEngine,
    mask_args,
    param_flags,
    resolve_credentials,
)
from docqueue.errors import ExecutionFailure, MissingCredentials, NoOutputProduced
from docqueue.models.job import Job

from conftest import PDF_BYTES, TEST_API_KEY


def make_job(params=None, pages=None, lang_out="zh"):
    return Job(id="job1", filename="report.pdf", lang_in="en", lang_out=lang_out,
               pages=pages, params=params or {})


@pytest.fixture
def input_pdf(artifacts):
    path = artifacts.upload_dir / "job1_report.pdf"
    path.write_bytes(PDF_BYTES)
    return path


class TestParamFlags:

    def test_value_rules(self):
        params = {
            "no-dual": "true",
            "skip-clean": " ON ",
            "watermark": "off",
            "enhance": "False",
            "empty": "",
            "qps": "4",
            "--pool-size": "2",
        }
        assert param_flags(params) == ["--no-dual", "--skip-clean", "--qps", "4", "--pool-size", "2"]

    def test_empty(self):
        assert param_flags({}) == []


class TestMaskArgs:

    def test_masks_separate_value(self):
        args = ["babeldoc", "--openai-api-key", "sk-secret", "--openai-model", "gpt-4o"]
        assert mask_args(args) == ["babeldoc", "--openai-api-key", "****", "--openai-model", "gpt-4o"]

    def test_masks_inline_value(self):
        assert mask_args(["--openai-api-key=sk-secret", "--qps", "4"]) == ["--openai-api-key=****", "--qps", "4"]


class TestResolveCredentials:

    def test_environment_defaults(self):
        creds = resolve_credentials({}, {"OPENAI_API_KEY": "sk-env"}, "gpt-4o-mini")
        assert creds.source == "environment"
        assert creds.args == ["--openai-api-key", "sk-env", "--openai-model", "gpt-4o-mini"]
        assert creds.env == {}

    def test_environment_model_and_base_url(self):
        environ = {"OPENAI_API_KEY": "sk-env", "OPENAI_MODEL": "gpt-4o", "OPENAI_BASE_URL": "http://llm:8000/v1"}
        creds = resolve_credentials({}, environ, "gpt-4o-mini")
        assert creds.args == [
            "--openai-api-key", "sk-env",
            "--openai-model", "gpt-4o",
            "--openai-base-url", "http://llm:8000/v1",
        ]

    def test_job_key_exported(self):
        params = {"openai-api-key": "sk-job", "openai-base-url": "http://proxy/v1"}
        creds = resolve_credentials(params, {}, "gpt-4o-mini")
        assert creds.source == "job"
        assert creds.args == []
        assert creds.env == {"OPENAI_API_KEY": "sk-job", "OPENAI_BASE_URL": "http://proxy/v1"}

    def test_job_model_with_environment_key(self):
        creds = resolve_credentials({"openai-model": "gpt-4o"}, {"OPENAI_API_KEY": "sk-env"}, "gpt-4o-mini")
        assert creds.source == "job"
        assert creds.args == []
        assert creds.env == {}

    def test_job_settings_without_any_key(self):
        with pytest.raises(MissingCredentials):
            resolve_credentials({"openai-model": "gpt-4o"}, {}, "gpt-4o-mini")

    def test_nothing_configured(self):
        with pytest.raises(MissingCredentials):
            resolve_credentials({}, {"OPENAI_API_KEY": "  "}, "gpt-4o-mini")


class TestTranslationEngine:

    def test_build_args(self, artifacts, tmp_path):
        engine = TranslationEngine(artifacts, command="babeldoc")
        job = make_job(params={"no-dual": "true", "qps": "4"}, pages="1-3", lang_out="ja")

        args = engine.build_args(job, tmp_path / "in.pdf", tmp_path / "ws")

        assert args == [
            "--files", str(tmp_path / "in.pdf"),
            "--lang-in", "en",
            "--lang-out", "ja",
            "--output", str(tmp_path / "ws"),
            "--pages", "1-3",
            "--no-dual",
            "--qps", "4",
        ]

    def test_command_string_is_split(self, artifacts):
        engine = TranslationEngine(artifacts, command="uv run babeldoc")
        assert engine.command == ["uv", "run", "babeldoc"]

    @pytest.mark.asyncio
    async def test_run_success(self, artifacts, fake_engine, engine_env, input_pdf):
        engine = TranslationEngine(artifacts, command=fake_engine, environ=engine_env)
        workspace = artifacts.prepare_workspace("job1")
        lines = []

        result = await engine.run(make_job(pages="1"), input_pdf, workspace, lines.append)

        assert result.ok
        assert result.returncode == 0
        assert [p.name for p in result.outputs] == ["job1_report.zh.mono.pdf"]
        assert "==> Using OpenAI configuration from environment" in lines
        running = [l for l in lines if l.startswith("==> Running: ")]
        assert len(running) == 1
        assert "--openai-api-key ****" in running[0]
        assert running[0].endswith("--openai")
        assert TEST_API_KEY not in "\n".join(lines)
        assert "translating job1_report.pdf en -> zh" in lines
        assert "model gpt-4o-mini" in lines
        assert "pages 1" in lines
        assert "[STDERR] progress 100%" in lines

    @pytest.mark.asyncio
    async def test_run_passes_extra_params(self, artifacts, fake_engine, engine_env, input_pdf):
        engine = TranslationEngine(artifacts, command=fake_engine, environ=engine_env)
        workspace = artifacts.prepare_workspace("job1")
        lines = []

        job = make_job(params={"no-dual": "on", "watermark": "off", "qps": "4"})
        result = await engine.run(job, input_pdf, workspace, lines.append)

        assert result.ok
        assert "extra --no-dual --qps 4" in lines

    @pytest.mark.asyncio
    async def test_run_nonzero_exit(self, artifacts, fake_engine, engine_env, input_pdf):
        engine = TranslationEngine(artifacts, command=fake_engine, environ=engine_env)
        workspace = artifacts.prepare_workspace("job1")
        lines = []

        result = await engine.run(make_job(params={"fake-mode": "fail"}), input_pdf, workspace, lines.append)

        assert not result.ok
        assert isinstance(result.error, ExecutionFailure)
        assert result.returncode == 3
        assert str(result.error) == "ExecutionFailure: engine exit status 3"
        assert "[STDERR] boom" in lines
        assert lines[-1] == "ERROR: command failed: engine exit status 3"

    @pytest.mark.asyncio
    async def test_run_without_outputs(self, artifacts, fake_engine, engine_env, input_pdf):
        engine = TranslationEngine(artifacts, command=fake_engine, environ=engine_env)
        workspace = artifacts.prepare_workspace("job1")
        lines = []

        result = await engine.run(make_job(params={"fake-mode": "empty"}), input_pdf, workspace, lines.append)

        assert result.returncode == 0
        assert isinstance(result.error, NoOutputProduced)
        assert lines[-1].startswith("ERROR: no output files matching")

    @pytest.mark.asyncio
    async def test_run_spawn_failure(self, artifacts, engine_env, input_pdf, tmp_path):
        engine = TranslationEngine(artifacts, command=[str(tmp_path / "no-such-engine")], environ=engine_env)
        workspace = artifacts.prepare_workspace("job1")
        lines = []

        result = await engine.run(make_job(), input_pdf, workspace, lines.append)

        assert isinstance(result.error, ExecutionFailure)
        assert "cannot start" in result.error.message
        assert lines[-1].startswith("ERROR: cannot start")

    @pytest.mark.asyncio
    async def test_run_missing_credentials(self, artifacts, fake_engine, input_pdf):
        engine = TranslationEngine(artifacts, command=fake_engine, environ={})
        workspace = artifacts.prepare_workspace("job1")
        lines = []

        result = await engine.run(make_job(), input_pdf, workspace, lines.append)

        assert isinstance(result.error, MissingCredentials)
        assert not any(l.startswith("==> Running") for l in lines)
        assert lines[0].startswith("ERROR: OpenAI is not configured")
        assert list(workspace.iterdir()) == []

    @pytest.mark.asyncio
    async def test_run_job_key_reaches_child_env(self, artifacts, fake_engine, input_pdf):
        # No key in the service environment; the job supplies one
        engine = TranslationEngine(artifacts, command=fake_engine, environ={})
        workspace = artifacts.prepare_workspace("job1")
        lines = []

        job = make_job(params={"openai-api-key": "sk-job-key", "openai-model": "gpt-4o"})
        result = await engine.run(job, input_pdf, workspace, lines.append)

        assert result.ok
        assert "==> Using OpenAI configuration from job parameters" in lines
        assert "model gpt-4o" in lines
        assert "sk-job-key" not in "\n".join(lines)
