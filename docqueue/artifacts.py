"""
Artifact manager - filesystem layout for uploads, per-job workspaces and outputs

uploads/<job id>_<name>          original upload
outputs/<job id>/                scratch workspace handed to the engine
outputs/<job id>_<engine name>   finalized output
"""

import logging
import os
import re
import shutil
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, List, Optional

from .errors import IOFailure, NoOutputProduced, ValidationError

logger = logging.getLogger("docqueue.artifacts")

CHUNK_SIZE = 1 << 20

# Identifiers issued by this service; anything else is a record from the earlier
# service, whose uploads are named <timestamp>_<original name>
JOB_ID_RE = re.compile(r"\d{8}-\d{6}_[0-9a-f]{8}")


def safe_filename(name: str) -> str:
    """Strip directories and anything but [A-Za-z0-9._-] from a client file name"""
    base = Path(name.replace("\\", "/")).name
    cleaned = "".join(c for c in base if c.isalnum() or c in "._-")
    return cleaned.lstrip(".") or "upload"


class ArtifactManager:
    """Owns the physical files of every job, keyed by job id"""

    def __init__(self, upload_dir: Path, output_dir: Path, max_upload_size: Optional[int] = None):
        self.upload_dir = Path(upload_dir)
        self.output_dir = Path(output_dir)
        self.max_upload_size = max_upload_size

    def ensure_dirs(self):
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def input_path(self, job_id: str, original_name: str) -> Path:
        return self.upload_dir / f"{job_id}_{safe_filename(original_name)}"

    def legacy_input_path(self, job_id: str, original_name: str) -> Optional[Path]:
        if JOB_ID_RE.fullmatch(job_id) or "_" not in job_id:
            return None
        name = Path(original_name.replace("\\", "/")).name
        if not name:
            return None
        return self.upload_dir / f"{job_id.split('_')[0]}_{name}"

    def locate_input(self, job_id: str, original_name: str) -> Path:
        """Stored upload of a job, falling back to the legacy name for old records"""
        path = self.input_path(job_id, original_name)
        if not path.exists():
            legacy = self.legacy_input_path(job_id, original_name)
            if legacy is not None and legacy.exists():
                return legacy
        return path

    def workspace_path(self, job_id: str) -> Path:
        return self.output_dir / job_id

    def output_path(self, name: str) -> Path:
        """Path of a finalized output; rejects anything that is not a plain file name"""
        if not name or Path(name).name != name or name in (".", ".."):
            raise ValidationError(f"invalid output name {name!r}")
        return self.output_dir / name

    def store_input(self, job_id: str, original_name: str, stream: BinaryIO) -> Path:
        """Copy an upload stream to its input path; a failed write leaves no partial file"""
        dst = self.input_path(job_id, original_name)
        written = 0
        try:
            self.upload_dir.mkdir(parents=True, exist_ok=True)
            with open(dst, "wb") as out:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if self.max_upload_size is not None and written > self.max_upload_size:
                        raise ValidationError(f"File too large (limit {self.max_upload_size} bytes)")
                    out.write(chunk)
        except ValidationError:
            self._unlink_quietly(dst)
            raise
        except OSError as e:
            self._unlink_quietly(dst)
            raise IOFailure(f"error saving upload {original_name}: {e}") from e

        logger.info("Input stored", extra={
            "component": "artifacts",
            "job_id": job_id,
            "path": str(dst),
            "size": written,
        })
        return dst

    def prepare_workspace(self, job_id: str) -> Path:
        """Create an empty scratch directory owned by one job"""
        workspace = self.workspace_path(job_id)
        try:
            if workspace.exists():
                shutil.rmtree(workspace)
            workspace.mkdir(parents=True)
        except OSError as e:
            raise IOFailure(f"cannot create workspace {workspace}: {e}") from e
        return workspace

    def collect_outputs(self, job_id: str, workspace: Path, pattern: str) -> List[Path]:
        files = sorted(p for p in Path(workspace).glob(pattern) if p.is_file())
        if not files:
            raise NoOutputProduced(f"no output files matching {pattern}")
        logger.info("Outputs collected", extra={
            "component": "artifacts",
            "job_id": job_id,
            "count": len(files),
        })
        return files

    def finalize(self, job_id: str, files: Iterable[Path],
                 log: Optional[Callable[[str], None]] = None) -> List[str]:
        """
        Move engine outputs into the flat output area as <job id>_<name>.

        A file that cannot be moved is reported and skipped; the names that
        did finalize are returned.
        """
        finalized = []
        for src in files:
            src = Path(src)
            # Engine names derive from the already prefixed input
            name = src.name if src.name.startswith(f"{job_id}_") else f"{job_id}_{src.name}"
            try:
                os.replace(src, self.output_dir / name)
            except OSError as e:
                logger.warning("Output rename failed", extra={
                    "component": "artifacts",
                    "job_id": job_id,
                    "file": str(src),
                    "error": str(e),
                })
                if log:
                    log(f"WARNING: cannot move file {src}: {e}")
                continue
            finalized.append(name)
            if log:
                log(f"==> Generated file: {name}")
        return finalized

    def cleanup_workspace(self, job_id: str):
        """Best-effort recursive removal of the scratch directory"""
        workspace = self.workspace_path(job_id)
        if not workspace.exists():
            return
        try:
            shutil.rmtree(workspace)
        except OSError as e:
            logger.warning("Workspace cleanup failed", extra={
                "component": "artifacts",
                "job_id": job_id,
                "error": str(e),
            })

    def remove(self, job_id: str, original_name: Optional[str], filenames: Iterable[str]):
        """Best-effort deletion of every file a job owns; missing files are fine"""
        targets = []
        if original_name:
            targets.append(self.input_path(job_id, original_name))
            legacy = self.legacy_input_path(job_id, original_name)
            if legacy is not None:
                targets.append(legacy)
        for name in filenames or []:
            try:
                targets.append(self.output_path(name))
            except ValidationError:
                logger.warning("Skipping unsafe output name", extra={
                    "component": "artifacts",
                    "job_id": job_id,
                    "file": name,
                })

        for path in targets:
            self._unlink_quietly(path, job_id=job_id)
        self.cleanup_workspace(job_id)

    def _unlink_quietly(self, path: Path, job_id: Optional[str] = None):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("File removal failed", extra={
                "component": "artifacts",
                "job_id": job_id,
                "path": str(path),
                "error": str(e),
            })
