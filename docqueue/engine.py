"""
Execution engine - runs the external translation program for one job

The engine is an opaque command line tool. This module derives its argument
list from a job, resolves OpenAI credentials, supervises the subprocess and
streams both of its output pipes into the job log.
"""

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

from .artifacts import ArtifactManager
from .errors import ExecutionFailure, JobError, MissingCredentials, NoOutputProduced
from .models.job import Job

logger = logging.getLogger("docqueue.engine")

# Parameter value markers (compared case-insensitively after stripping)
TRUE_VALUES = frozenset({"true", "on"})
FALSE_VALUES = frozenset({"false", "off", ""})

API_KEY_PARAM = "openai-api-key"
MODEL_PARAM = "openai-model"
BASE_URL_PARAM = "openai-base-url"
CREDENTIAL_PARAMS = (API_KEY_PARAM, MODEL_PARAM, BASE_URL_PARAM)
SECRET_FLAGS = frozenset({"--" + API_KEY_PARAM})

STDERR_TAG = "[STDERR] "
STREAM_LIMIT = 1 << 20  # longest line read from the engine's pipes


def param_flags(params: Mapping[str, str]) -> List[str]:
    """
    Translate engine parameters into command line arguments.

    ``true``/``on`` -> ``--key``; ``false``/``off``/empty -> dropped;
    anything else -> ``--key value``. Order follows the mapping.
    """
    args: List[str] = []
    for key, value in params.items():
        name = str(key).strip().lstrip("-")
        if not name:
            continue
        value = "" if value is None else str(value).strip()
        marker = value.lower()
        if marker in FALSE_VALUES:
            continue
        if marker in TRUE_VALUES:
            args.append(f"--{name}")
        else:
            args.extend([f"--{name}", value])
    return args


def mask_args(args: Sequence[str]) -> List[str]:
    """Copy of an argument list with credential values replaced by ****"""
    masked: List[str] = []
    hide_next = False
    for arg in args:
        if hide_next:
            masked.append("****")
            hide_next = False
            continue
        flag, sep, _ = arg.partition("=")
        if flag in SECRET_FLAGS:
            if sep:
                masked.append(f"{flag}=****")
            else:
                masked.append(arg)
                hide_next = True
            continue
        masked.append(arg)
    return masked


@dataclass
class Credentials:
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    source: str = "job"  # job|environment


def resolve_credentials(params: Mapping[str, str], environ: Mapping[str, str],
                        default_model: str) -> Credentials:
    """
    Decide where the engine's OpenAI settings come from.

    If the job supplied none of key/model/base URL, the process environment
    provides them. An API key must exist in one of the two places.
    """
    supplied = {k: str(params.get(k) or "").strip() for k in CREDENTIAL_PARAMS}
    env_key = (environ.get("OPENAI_API_KEY") or "").strip()

    if any(supplied.values()):
        if not supplied[API_KEY_PARAM] and not env_key:
            raise MissingCredentials("no OpenAI API key in job parameters or environment")
        # The flags themselves come from param_flags; the child also sees them as env
        env = {}
        if supplied[API_KEY_PARAM]:
            env["OPENAI_API_KEY"] = supplied[API_KEY_PARAM]
        if supplied[BASE_URL_PARAM]:
            env["OPENAI_BASE_URL"] = supplied[BASE_URL_PARAM]
        return Credentials(env=env, source="job")

    if not env_key:
        raise MissingCredentials(
            "OpenAI is not configured: pass openai-api-key with the job or set OPENAI_API_KEY"
        )
    args = [
        "--" + API_KEY_PARAM, env_key,
        "--" + MODEL_PARAM, (environ.get("OPENAI_MODEL") or "").strip() or default_model,
    ]
    env_base_url = (environ.get("OPENAI_BASE_URL") or "").strip()
    if env_base_url:
        args.extend(["--" + BASE_URL_PARAM, env_base_url])
    return Credentials(args=args, source="environment")


@dataclass
class ExecutionResult:
    outputs: List[Path] = field(default_factory=list)
    error: Optional[JobError] = None
    returncode: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TranslationEngine:
    """Single-pass, non-retrying supervisor for the external translation program"""

    def __init__(
        self,
        artifacts: ArtifactManager,
        command: Union[str, Sequence[str]] = "babeldoc",
        output_pattern: str = "*.pdf",
        environ: Optional[Mapping[str, str]] = None,
        default_model: str = "gpt-4o-mini",
    ):
        self.artifacts = artifacts
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.output_pattern = output_pattern
        self.environ = environ
        self.default_model = default_model

    def _environ(self) -> Dict[str, str]:
        return dict(os.environ if self.environ is None else self.environ)

    def build_args(self, job: Job, input_path: Path, workspace: Path) -> List[str]:
        args = [
            "--files", str(input_path),
            "--lang-in", job.lang_in,
            "--lang-out", job.lang_out,
            "--output", str(workspace),
        ]
        if job.pages:
            args.extend(["--pages", job.pages])
        args.extend(param_flags(job.params or {}))
        return args

    async def run(self, job: Job, input_path: Path, workspace: Path,
                  log: Callable[[str], None]) -> ExecutionResult:
        environ = self._environ()

        try:
            creds = resolve_credentials(job.params or {}, environ, self.default_model)
        except MissingCredentials as e:
            log(f"ERROR: {e.message}")
            return ExecutionResult(error=e)

        if creds.source == "environment":
            log("==> Using OpenAI configuration from environment")
        else:
            log("==> Using OpenAI configuration from job parameters")

        argv = self.command + self.build_args(job, input_path, workspace) + creds.args + ["--openai"]
        log(f"==> Running: {' '.join(mask_args(argv))}")

        environ.update(creds.env)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=environ,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            err = ExecutionFailure(f"cannot start {self.command[0]}: {e}")
            log(f"ERROR: {err.message}")
            logger.warning("Engine spawn failed", extra={
                "component": "engine",
                "job_id": job.id,
                "error": str(e),
            })
            return ExecutionResult(error=err)

        logger.info("Engine started", extra={"component": "engine", "job_id": job.id, "pid": proc.pid})

        try:
            await asyncio.gather(
                self._drain(proc.stdout, log, ""),
                self._drain(proc.stderr, log, STDERR_TAG),
            )
            returncode = await proc.wait()
        except asyncio.CancelledError:
            # Worker shutdown: do not leave the engine running unsupervised
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        logger.info("Engine exited", extra={
            "component": "engine",
            "job_id": job.id,
            "returncode": returncode,
        })

        if returncode != 0:
            if returncode < 0:
                err = ExecutionFailure(f"engine terminated by signal {-returncode}")
            else:
                err = ExecutionFailure(f"engine exit status {returncode}")
            log(f"ERROR: command failed: {err.message}")
            return ExecutionResult(error=err, returncode=returncode)

        try:
            outputs = self.artifacts.collect_outputs(job.id, workspace, self.output_pattern)
        except NoOutputProduced as e:
            log(f"ERROR: {e.message}")
            return ExecutionResult(error=e, returncode=returncode)

        return ExecutionResult(outputs=outputs, returncode=returncode)

    @staticmethod
    async def _drain(stream: asyncio.StreamReader, log: Callable[[str], None], prefix: str):
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                log(f"{prefix}<line exceeded {STREAM_LIMIT} bytes, truncated>")
                continue
            if not line:
                break
            log(prefix + line.decode("utf-8", errors="replace").rstrip("\r\n"))
