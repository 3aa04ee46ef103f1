"""
PropelAI Proposal Orchestrator API
FastAPI surface over the pipeline runtime

Endpoints:
- POST /api/jobs                                  - Submit an RFP for proposal generation
- GET  /api/jobs/{job_id}                         - Job status, progress and stage map
- GET  /api/jobs/{job_id}/volumes/{number}        - One volume with its iteration history
- POST /api/jobs/{job_id}/cancel                  - Cancel a job
- POST /api/jobs/{job_id}/retry                   - Retry a failed/blocked job from checkpoint
- POST /api/jobs/{job_id}/data-approval           - Release the data validation gate
- POST /api/jobs/{job_id}/volumes/{number}/decision - Approve or iterate on a volume
"""

import asyncio
import logging
import os
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from core.errors import InvalidTransition, JobNotFound
from core.logging_setup import setup_logging
from core.state import VOLUME_CATALOGUE, Decision
from database.connection import health_check as database_health_check
from pipeline.runtime import PipelineRuntime, create_runtime

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# ============== Request / Response Models ==============

class JobCreateRequest(BaseModel):
    company_id: str = Field(..., min_length=1)
    rfp_text: str = Field(..., min_length=1)
    company_data: Dict[str, Any] = Field(default_factory=dict)
    rfp_parsed_data: Optional[Dict[str, Any]] = None


class JobCreateResponse(BaseModel):
    job_id: str
    status: str
    estimated_minutes: Dict[str, int] = Field(default_factory=dict)


class DataApprovalRequest(BaseModel):
    approved: bool = True
    company_data: Optional[Dict[str, Any]] = None


class VolumeDecisionRequest(BaseModel):
    decision: Decision
    feedback: str = ""


class ActionResponse(BaseModel):
    job_id: str
    accepted: bool = True
    attempt: Optional[int] = None


# ============== Request ID Middleware ==============

class RequestIDMiddleware(BaseHTTPMiddleware):
    """Echo or assign X-Request-ID for log correlation"""

    async def dispatch(self, request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ============== Application ==============

def create_app(runtime: Optional[PipelineRuntime] = None) -> FastAPI:
    """
    Build the API around a runtime.

    When no runtime is given one is created from the environment on startup.
    """
    app = FastAPI(
        title="PropelAI Proposal Orchestrator",
        description="Durable, human-gated proposal generation over four volumes",
        version=API_VERSION,
    )
    app.state.runtime = runtime
    app.state.monitor_stop = None
    app.state.monitor_task = None

    cors_origins = os.environ.get("CORS_ORIGINS", "*")
    if cors_origins == "*":
        origins, credentials = ["*"], False
    else:
        origins, credentials = [o.strip() for o in cors_origins.split(",")], True

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
    )
    app.add_middleware(RequestIDMiddleware)

    @app.on_event("startup")
    async def startup_event():
        if app.state.runtime is None:
            setup_logging()
            app.state.runtime = create_runtime()
        rt: PipelineRuntime = app.state.runtime

        recovered = await rt.startup()
        logger.info(f"[Startup] Orchestrator ready ({recovered} job(s) recovered)")

        app.state.monitor_stop = asyncio.Event()
        app.state.monitor_task = asyncio.create_task(rt.monitor.run_forever(app.state.monitor_stop))

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.monitor_stop is not None:
            app.state.monitor_stop.set()
        task = app.state.monitor_task
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        rt: Optional[PipelineRuntime] = app.state.runtime
        if rt is not None:
            await rt.shutdown()
        logger.info("[Shutdown] Cleanup complete")

    def get_runtime(request: Request) -> PipelineRuntime:
        rt = request.app.state.runtime
        if rt is None:
            raise HTTPException(status_code=503, detail="Orchestrator not ready")
        return rt

    # ============== Health ==============

    @app.get("/api/health", tags=["Health"])
    async def health_check(request: Request):
        """Liveness plus store connectivity; the memory store has nothing to check"""
        rt = get_runtime(request)
        status = {"status": "healthy", "database": "not configured"}
        if rt.engine is not None:
            status = await database_health_check(rt.engine)
        return {
            **status,
            "version": API_VERSION,
            "timestamp": datetime.now().isoformat(),
            "store": type(rt.store).__name__,
        }

    # ============== Jobs ==============

    @app.post("/api/jobs", response_model=JobCreateResponse, status_code=202, tags=["Jobs"])
    async def create_job(body: JobCreateRequest, request: Request):
        rt = get_runtime(request)
        job = await rt.submit(
            body.company_id,
            body.rfp_text,
            company_data=body.company_data,
            rfp_parsed_data=body.rfp_parsed_data,
        )
        return JobCreateResponse(job_id=job.job_id, status=job.status, estimated_minutes=job.estimated_minutes)

    @app.get("/api/jobs/{job_id}", tags=["Jobs"])
    async def get_job(job_id: str, request: Request):
        rt = get_runtime(request)
        try:
            job = await rt.store.get_job(job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

        volumes = await rt.store.list_volumes(job_id)
        data = job.to_dict()
        data.pop("inputs", None)
        data.pop("final_html", None)
        data["volumes"] = [v.to_dict(include_content=False) for v in volumes]
        return data

    @app.get("/api/jobs/{job_id}/volumes/{number}", tags=["Volumes"])
    async def get_volume(job_id: str, number: int, request: Request):
        rt = get_runtime(request)
        _check_volume(number)
        try:
            volume = await rt.store.get_volume(job_id, number)
        except JobNotFound:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

        records = await rt.store.list_iteration_records(job_id, number)
        data = volume.to_dict()
        data["iterations"] = [r.to_dict() for r in records]
        return data

    @app.post("/api/jobs/{job_id}/cancel", response_model=ActionResponse, tags=["Jobs"])
    async def cancel_job(job_id: str, request: Request):
        rt = get_runtime(request)
        try:
            await rt.cancel(job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        return ActionResponse(job_id=job_id)

    @app.post("/api/jobs/{job_id}/retry", response_model=ActionResponse, tags=["Jobs"])
    async def retry_job(job_id: str, request: Request):
        rt = get_runtime(request)
        try:
            attempt = await rt.retry(job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        return ActionResponse(job_id=job_id, attempt=attempt)

    @app.post("/api/jobs/{job_id}/data-approval", response_model=ActionResponse, tags=["Jobs"])
    async def approve_data(job_id: str, body: DataApprovalRequest, request: Request):
        rt = get_runtime(request)
        try:
            await rt.approve_data(job_id, approved=body.approved, company_data=body.company_data)
        except JobNotFound:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        except InvalidTransition:
            raise HTTPException(status_code=409, detail="Job is not waiting for data approval")
        return ActionResponse(job_id=job_id)

    @app.post("/api/jobs/{job_id}/volumes/{number}/decision", response_model=ActionResponse, tags=["Volumes"])
    async def decide_volume(job_id: str, number: int, body: VolumeDecisionRequest, request: Request):
        rt = get_runtime(request)
        _check_volume(number)
        try:
            await rt.store.get_job(job_id)
            await rt.decide(job_id, number, body.decision, body.feedback)
        except JobNotFound:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return ActionResponse(job_id=job_id)

    return app


def _check_volume(number: int) -> None:
    if number not in VOLUME_CATALOGUE:
        valid: List[int] = sorted(VOLUME_CATALOGUE)
        raise HTTPException(status_code=404, detail=f"Volume must be one of {valid}")


app = create_app()
