from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .api.health import router as health_router
from .api.prometheus import router as prometheus_router
from .api.tasks import router as tasks_router
from .artifacts import ArtifactManager
from .engine import TranslationEngine
from .errors import JobError, NotFound, QueueFull, ValidationError
from .joblog import JobLogStore
from .lifecycle import JobService
from .logging_config import setup_logging
from .middleware import TracingMiddleware
from .queue_manager import QueueManager
from .store import JobStore
from .config import (
    API_VERSION, HOST, PORT, UPLOAD_DIR, OUTPUT_DIR, LOGS_DIR, DATABASE_URL,
    MAX_UPLOAD_SIZE, ALLOWED_EXTENSION, DEFAULT_LANG_IN, DEFAULT_LANG_OUT,
    ENGINE_COMMAND, OUTPUT_PATTERN, DEFAULT_OPENAI_MODEL,
    QUEUE_MAX_DEPTH, WORKER_POOL_SIZE, QUEUE_RETRY_AFTER_SECONDS, REQUEUE_ON_STARTUP,
    STATIC_DIR, HTTP_LOG_EXCLUDE_PATHS,
)

# Configure logging at import time
setup_logging()

logger = logging.getLogger("docqueue")


def build_service() -> JobService:
    """Wire the job service from environment configuration"""
    artifacts = ArtifactManager(UPLOAD_DIR, OUTPUT_DIR, max_upload_size=MAX_UPLOAD_SIZE)
    return JobService(
        store=JobStore(DATABASE_URL),
        artifacts=artifacts,
        logs=JobLogStore(LOGS_DIR),
        engine=TranslationEngine(
            artifacts,
            command=ENGINE_COMMAND,
            output_pattern=OUTPUT_PATTERN,
            default_model=DEFAULT_OPENAI_MODEL,
        ),
        queue=QueueManager(
            max_depth=QUEUE_MAX_DEPTH,
            worker_pool_size=WORKER_POOL_SIZE,
            retry_after_seconds=QUEUE_RETRY_AFTER_SECONDS,
        ),
        allowed_extension=ALLOWED_EXTENSION,
        default_lang_in=DEFAULT_LANG_IN,
        default_lang_out=DEFAULT_LANG_OUT,
    )


def create_app(service: Optional[JobService] = None,
               requeue: bool = REQUEUE_ON_STARTUP,
               static_dir: Optional[Path] = STATIC_DIR) -> FastAPI:
    """Application factory; tests pass a service wired to temporary directories"""

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        svc = service or build_service()
        application.state.service = svc

        logger.info("Job service starting up", extra={"component": "api"})
        await svc.start(requeue=requeue)
        logger.info("Job service ready", extra={
            "component": "api",
            "workers": svc.queue.worker_pool_size,
            "queue_max_depth": svc.queue.max_depth,
        })

        try:
            yield
        finally:
            await svc.stop()
            if service is None:
                svc.store.close()
            logger.info("Job service shut down", extra={"component": "api"})

    application = FastAPI(title="Document Translation Job Service", version=API_VERSION, lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(TracingMiddleware, exclude_paths=HTTP_LOG_EXCLUDE_PATHS)

    @application.exception_handler(JobError)
    async def job_error_handler(request: Request, exc: JobError):
        headers = None
        body = {"success": False, "error": exc.message or exc.kind}
        if isinstance(exc, ValidationError):
            status_code = 400
        elif isinstance(exc, NotFound):
            status_code = 404
        elif isinstance(exc, QueueFull):
            status_code = 503
            body = {"success": False, "error": "backpressure", "retry_after": exc.retry_after}
            headers = {"Retry-After": str(exc.retry_after)}
        else:
            status_code = 500
        return JSONResponse(status_code=status_code, content=body, headers=headers)

    @application.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error", extra={"component": "api", "path": request.url.path})
        return JSONResponse(status_code=500, content={"success": False, "error": "internal error"})

    application.include_router(tasks_router)
    application.include_router(health_router)
    application.include_router(prometheus_router)

    # Browser UI, if present; mounted last so API routes win
    if static_dir is not None and Path(static_dir).is_dir():
        application.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")

    return application


app = create_app()


def run():
    """Console entry point"""
    uvicorn.run(app, host=HOST, port=PORT, log_config=None)


if __name__ == "__main__":
    run()
