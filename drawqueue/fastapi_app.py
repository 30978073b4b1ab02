"""FastAPI application for drawqueue.

This module provides REST API endpoints for the standalone service (port 7860).
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from drawqueue import __version__
from drawqueue.core.profiles import DEFAULT_PORT
from drawqueue.core.services import AppServices, create_services
from drawqueue.core.handlers import (
    ApiResponse,
    ProfileParams,
    SubmitParams,
    handle_health,
    handle_get_connection,
    handle_post_connection,
    handle_disconnect,
    handle_reconnect,
    handle_get_models,
    handle_list_profiles,
    handle_create_profile,
    handle_update_profile,
    handle_delete_profile,
    handle_set_default_profile,
    handle_submit_job,
    handle_submit_jobs,
    handle_list_jobs,
    handle_get_job,
    handle_get_job_images,
    handle_get_job_image,
    handle_get_preview,
    handle_cancel_job,
    handle_retry_job,
    handle_delete_job,
    handle_move_jobs,
    handle_get_queue,
    handle_pause_queue,
    handle_resume_queue,
    handle_clear_queue,
    handle_estimate_tokens,
)

logger = logging.getLogger(__name__)


# Request/Response Models (Pydantic for FastAPI validation)

class ConnectionRequest(BaseModel):
    profile_id: Optional[str] = None  # default profile when omitted


class ProfileRequest(BaseModel):
    name: str
    host: str = "localhost"
    port: int = DEFAULT_PORT
    use_tls: bool = True
    is_default: bool = False


class HintRequest(BaseModel):
    type: str
    image: str  # Base64 encoded PNG
    weight: float = 1.0


class SubmitRequest(BaseModel):
    prompt: str
    configuration: Optional[dict | str] = None  # JSON object or its string form
    negative_prompt: str = ""
    name: Optional[str] = None
    canvas: Optional[str] = None  # Base64 encoded PNG
    mask: Optional[str] = None  # Base64 encoded PNG mask
    hints: list[HintRequest] = []


class BatchSubmitRequest(BaseModel):
    jobs: list[SubmitRequest]


class SubmitResponse(BaseModel):
    job_id: str
    status: str


class MoveRequest(BaseModel):
    from_indices: list[int]
    to_index: int


class TokenRequest(BaseModel):
    text: str
    model: Optional[str] = None  # sd15, sdxl, flux or t5
    limit: Optional[int] = None


def _submit_params(request: SubmitRequest) -> SubmitParams:
    return SubmitParams(
        prompt=request.prompt,
        configuration=request.configuration,
        negative_prompt=request.negative_prompt,
        name=request.name,
        canvas=request.canvas,
        mask=request.mask,
        hints=[h.model_dump() for h in request.hints] if request.hints else [],
    )


def _profile_params(request: ProfileRequest) -> ProfileParams:
    return ProfileParams(
        name=request.name,
        host=request.host,
        port=request.port,
        use_tls=request.use_tls,
        is_default=request.is_default,
    )


def get_services(request: Request) -> AppServices:
    services = request.app.state.services
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """Build the API around ``services``; they are created on startup when omitted."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        if app.state.services is None:
            app.state.services = create_services()
        await app.state.services.startup()
        yield
        # Cleanup on shutdown
        await app.state.services.shutdown()

    app = FastAPI(title="drawqueue", version=__version__, lifespan=lifespan)
    app.state.services = services

    # Enable CORS for browser and plugin clients
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health & Connection Endpoints

    @app.get("/api/health")
    async def health(services: AppServices = Depends(get_services)):
        resp = await handle_health(services)
        return resp.data

    @app.get("/api/connection")
    async def get_connection(services: AppServices = Depends(get_services)):
        resp = await handle_get_connection(services)
        return resp.data

    @app.post("/api/connection")
    async def post_connection(
        request: ConnectionRequest,
        services: AppServices = Depends(get_services),
    ):
        """Connect to a profile (or the default one); failures show up in the returned state."""
        resp = await handle_post_connection(services, request.profile_id)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.post("/api/connection/disconnect")
    async def disconnect(services: AppServices = Depends(get_services)):
        resp = await handle_disconnect(services)
        return resp.data

    @app.post("/api/connection/reconnect")
    async def reconnect(services: AppServices = Depends(get_services)):
        resp = await handle_reconnect(services)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.get("/api/models")
    async def get_models(services: AppServices = Depends(get_services)):
        """Get the model catalog of the connected server."""
        resp = await handle_get_models(services)
        return resp.data

    # Profile Endpoints

    @app.get("/api/profiles")
    async def list_profiles(services: AppServices = Depends(get_services)):
        resp = await handle_list_profiles(services)
        return resp.data

    @app.post("/api/profiles")
    async def create_profile(request: ProfileRequest, services: AppServices = Depends(get_services)):
        resp = await handle_create_profile(services, _profile_params(request))
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.put("/api/profiles/{profile_id}")
    async def update_profile(
        profile_id: str,
        request: ProfileRequest,
        services: AppServices = Depends(get_services),
    ):
        resp = await handle_update_profile(services, profile_id, _profile_params(request))
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.delete("/api/profiles/{profile_id}")
    async def delete_profile(profile_id: str, services: AppServices = Depends(get_services)):
        resp = await handle_delete_profile(services, profile_id)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.post("/api/profiles/{profile_id}/default")
    async def set_default_profile(profile_id: str, services: AppServices = Depends(get_services)):
        resp = await handle_set_default_profile(services, profile_id)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    # Job Endpoints

    @app.post("/api/jobs", response_model=SubmitResponse)
    async def submit_job(request: SubmitRequest, services: AppServices = Depends(get_services)):
        """Queue a generation job."""
        resp = await handle_submit_job(services, _submit_params(request))
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.post("/api/jobs/batch")
    async def submit_jobs(request: BatchSubmitRequest, services: AppServices = Depends(get_services)):
        """Queue several jobs at once; all or nothing."""
        resp = await handle_submit_jobs(services, [_submit_params(job) for job in request.jobs])
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.post("/api/jobs/move")
    async def move_jobs(request: MoveRequest, services: AppServices = Depends(get_services)):
        """Reorder pending jobs."""
        resp = await handle_move_jobs(services, request.from_indices, request.to_index)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.get("/api/jobs")
    async def list_jobs(status: Optional[str] = None, services: AppServices = Depends(get_services)):
        resp = await handle_list_jobs(services, status)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.get("/api/jobs/{job_id}")
    async def get_job(job_id: str, services: AppServices = Depends(get_services)):
        """Get the status of a job."""
        resp = await handle_get_job(services, job_id)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.get("/api/jobs/{job_id}/images")
    async def get_job_images(job_id: str, services: AppServices = Depends(get_services)):
        """Get the generated images for a job (base64 encoded)."""
        resp = await handle_get_job_images(services, job_id)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.get("/api/jobs/{job_id}/images/{index}")
    async def get_job_image(job_id: str, index: int, services: AppServices = Depends(get_services)):
        """Get a specific generated image as binary PNG."""
        result = await handle_get_job_image(services, job_id, index)
        if isinstance(result, ApiResponse):
            raise HTTPException(status_code=result.status, detail=result.data.get("error"))
        image_data, media_type = result
        return Response(content=image_data, media_type=media_type)

    @app.post("/api/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str, services: AppServices = Depends(get_services)):
        """Cancel a pending or processing job."""
        resp = await handle_cancel_job(services, job_id)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.post("/api/jobs/{job_id}/retry")
    async def retry_job(job_id: str, services: AppServices = Depends(get_services)):
        """Requeue a failed job."""
        resp = await handle_retry_job(services, job_id)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    @app.delete("/api/jobs/{job_id}")
    async def delete_job(job_id: str, services: AppServices = Depends(get_services)):
        resp = await handle_delete_job(services, job_id)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    # Queue Endpoints

    @app.get("/api/queue")
    async def get_queue(services: AppServices = Depends(get_services)):
        resp = await handle_get_queue(services)
        return resp.data

    @app.get("/api/queue/preview")
    async def get_preview(services: AppServices = Depends(get_services)):
        """Latest preview image of the processing job."""
        result = await handle_get_preview(services)
        if isinstance(result, ApiResponse):
            raise HTTPException(status_code=result.status, detail=result.data.get("error"))
        image_data, media_type = result
        return Response(content=image_data, media_type=media_type)

    @app.post("/api/queue/pause")
    async def pause_queue(services: AppServices = Depends(get_services)):
        resp = await handle_pause_queue(services)
        return resp.data

    @app.post("/api/queue/resume")
    async def resume_queue(services: AppServices = Depends(get_services)):
        resp = await handle_resume_queue(services)
        return resp.data

    @app.post("/api/queue/clear")
    async def clear_queue(scope: str = "finished", services: AppServices = Depends(get_services)):
        """Remove completed, failed, finished or all jobs."""
        resp = await handle_clear_queue(services, scope)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    # Token Endpoints

    @app.post("/api/tokens")
    async def estimate_tokens(request: TokenRequest):
        """Estimate the token count of a prompt."""
        resp = await handle_estimate_tokens(request.text, request.model, request.limit)
        if resp.status != 200:
            raise HTTPException(status_code=resp.status, detail=resp.data.get("error"))
        return resp.data

    return app


app = create_app()
