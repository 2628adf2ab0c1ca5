from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from frame_pipeline.config import configure_logging, resolve_config
from frame_pipeline.errors import StoreUnavailable
from frame_pipeline.ffmpeg_runner import check_ffmpeg
from frame_pipeline.job_service import JobService
from frame_pipeline.models import PipelineConfig
from frame_pipeline.queue.worker import JobScheduler

logger = logging.getLogger(__name__)

try:
    SERVICE_VERSION = version("frame-pipeline")
except PackageNotFoundError:
    SERVICE_VERSION = "0.0.0"


# --- Pydantic Models for Requests/Responses ---
class ProcessRequest(BaseModel):
    file_id: str = Field(..., min_length=1)


class ApiResponse(BaseModel):
    success: bool
    message: str = ""
    data: Any = None
    error: Optional[str] = None


def envelope(status_code: int = 200, **fields) -> JSONResponse:
    body = ApiResponse(**fields).model_dump(mode="json", exclude_none=True)
    return JSONResponse(status_code=status_code, content=body)


def get_service(request: Request) -> JobService:
    return request.app.state.service


def create_app(
    service: Optional[JobService] = None,
    config: Optional[PipelineConfig] = None,
    start_worker: bool = True,
) -> FastAPI:
    """Build the HTTP adapter around a job service.

    Without an injected service, the lifespan builds one from the resolved
    config and runs the scheduler on a background thread, so a single
    process both accepts and executes jobs.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = config or resolve_config()
        configure_logging(cfg.logging.level)

        owned = getattr(app.state, "service", None) is None
        if owned:
            app.state.service = JobService.from_config(cfg)

        scheduler = None
        if start_worker:
            scheduler = JobScheduler.from_config(app.state.service, cfg.worker)
            scheduler.start()

        yield

        if scheduler is not None:
            await asyncio.to_thread(scheduler.stop)
        if owned:
            app.state.service.close()
            app.state.service = None

    app = FastAPI(title="frame-pipeline", version=SERVICE_VERSION, lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        return envelope(400, success=False, error=f"Invalid request: {exc.errors()}")

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error("Store unavailable serving %s: %s", request.url.path, exc)
        return envelope(500, success=False, error=f"Job store unavailable: {exc}")

    # --- HEALTH ---
    @app.get("/health")
    def health(request: Request):
        store_healthy = get_service(request).store.ping()
        ffmpeg_available = check_ffmpeg(
            get_service(request).processor.config.ffmpeg_path
        )
        return envelope(
            success=store_healthy and ffmpeg_available,
            message="Processing Service health check",
            data={
                "timestamp": int(time.time()),
                "store_healthy": store_healthy,
                "ffmpeg_available": ffmpeg_available,
                "version": SERVICE_VERSION,
            },
        )

    # --- JOBS ---
    @app.post("/process")
    def start_processing(req: ProcessRequest, request: Request):
        job = get_service(request).submit(req.file_id)
        return envelope(
            success=True,
            message="Processing job created successfully",
            data={
                "job_id": job.id,
                "file_id": job.input_ref,
                "status": job.status.value,
                "created_at": job.created_at.isoformat(),
            },
        )

    @app.get("/process/{job_id}/status")
    def get_processing_status(job_id: str, request: Request):
        job = get_service(request).get_status(job_id)
        if job is None:
            return envelope(404, success=False, error="Job not found")
        return envelope(
            success=True, message="Job status retrieved", data=job.model_dump(mode="json")
        )

    @app.get("/jobs")
    def list_jobs(request: Request):
        jobs = get_service(request).list_jobs()
        return envelope(
            success=True,
            message="Jobs listed successfully",
            data={"jobs": [job.model_dump(mode="json") for job in jobs], "total": len(jobs)},
        )

    @app.delete("/process/{job_id}")
    def cancel_processing(job_id: str, request: Request):
        service = get_service(request)
        job = service.store.get(job_id)
        if job is None:
            return envelope(404, success=False, error="Job not found")

        if not service.cancel(job_id):
            current = service.store.get(job_id) or job
            return envelope(
                400, success=False, error=f"Cannot cancel job with status: {current.status.value}"
            )
        return envelope(success=True, message="Job cancelled successfully")

    return app


app = create_app()
