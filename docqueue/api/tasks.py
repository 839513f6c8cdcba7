"""
Task API - submission, listing, detail, logs, download and deletion
"""

import logging
import mimetypes
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData, UploadFile

from ..errors import IOFailure, NotFound, QueueFull, ValidationError
from ..lifecycle import JobService
from ..schemas.job import ErrorResponse, JobOut, SubmitResponse

logger = logging.getLogger("docqueue.api")

router = APIRouter(prefix="/api/tasks", tags=["tasks"])

# Form fields with a dedicated meaning; every other field is an engine parameter
RESERVED_FIELDS = frozenset({"file", "lang_in", "lang_out", "pages"})

# Multipart overhead tolerated above the upload limit before parsing
FORM_OVERHEAD = 1 << 20


def get_service(request: Request) -> JobService:
    return request.app.state.service


def _error(status_code: int, message: str, headers: Optional[Dict[str, str]] = None, **fields) -> JSONResponse:
    body = ErrorResponse(error=message, **fields).model_dump(exclude_none=True)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def _form_str(form: FormData, key: str) -> Optional[str]:
    value = form.get(key)
    return value if isinstance(value, str) else None


def _engine_params(form: FormData) -> Dict[str, str]:
    """Every non-reserved text field, first value wins, in submission order"""
    params: Dict[str, str] = {}
    for key, value in form.multi_items():
        if key in RESERVED_FIELDS or key in params or not isinstance(value, str):
            continue
        params[key] = value
    return params


@router.post("/submit", response_model=SubmitResponse)
async def submit_task(request: Request, service: JobService = Depends(get_service)):
    """Accept a document upload and queue a translation job"""
    max_size = service.artifacts.max_upload_size
    content_length = request.headers.get("content-length")
    if max_size and content_length and content_length.isdigit() and int(content_length) > max_size + FORM_OVERHEAD:
        return _error(400, "File too large")

    try:
        form = await request.form()
    except Exception as e:
        logger.warning("Unreadable submission form", extra={"error": str(e)})
        return _error(400, "Invalid multipart form")

    try:
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            return _error(400, "Error retrieving file")

        # Copying the upload and writing the record block; keep them off the worker's loop
        job = await run_in_threadpool(
            service.accept,
            upload.filename,
            upload.file,
            lang_in=_form_str(form, "lang_in"),
            lang_out=_form_str(form, "lang_out"),
            pages=_form_str(form, "pages"),
            params=_engine_params(form),
        )
        service.schedule(job)
    except ValidationError as e:
        return _error(400, e.message)
    except QueueFull as e:
        return _error(
            503, "backpressure",
            headers={"Retry-After": str(e.retry_after)},
            retry_after=e.retry_after,
        )
    except IOFailure as e:
        logger.error("Submission failed", extra={"error": str(e)})
        return _error(500, e.message)
    finally:
        await form.close()

    return SubmitResponse(task_id=job.id)


@router.get("/list", response_model=List[JobOut])
def list_tasks(service: JobService = Depends(get_service)):
    """All jobs, most recent first"""
    return [JobOut.from_job(job) for job in service.list()]


@router.get("/detail/{task_id}", response_model=JobOut)
def task_detail(task_id: str, service: JobService = Depends(get_service)):
    try:
        return JobOut.from_job(service.get(task_id))
    except NotFound:
        return _error(404, "Task not found")


@router.get("/logs/{task_id}", response_class=PlainTextResponse)
def task_logs(task_id: str, service: JobService = Depends(get_service)):
    """Raw job log; readable while the job is running"""
    return PlainTextResponse(service.read_log(task_id))


@router.get("/download/{task_id}")
def download_task(task_id: str, file: Optional[str] = Query(None),
                  service: JobService = Depends(get_service)):
    """A finalized output of the job; the first one when no file is named"""
    try:
        path = service.resolve_download(task_id, file)
    except NotFound:
        return _error(404, "File not found")

    media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return FileResponse(path, media_type=media_type, filename=path.name)


@router.delete("/delete/{task_id}")
def delete_task(task_id: str, service: JobService = Depends(get_service)):
    try:
        service.delete(task_id)
    except NotFound:
        return _error(404, "Task not found")
    return {"success": True}


@router.get("/stats")
def task_stats(service: JobService = Depends(get_service)):
    """Job counts by status and queue occupancy"""
    return service.stats()
