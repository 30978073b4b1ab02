"""Framework-agnostic request handlers for the drawqueue API.

These handlers contain pure business logic without any framework-specific code.
Each takes the ``AppServices`` it operates on and returns an ``ApiResponse``.
"""
import base64
import binascii
from dataclasses import dataclass, field
from typing import Optional

from .errors import ValidationError
from .jobs import GenerationJob, HintData, JobRequest, JobStatus
from .profiles import DEFAULT_PORT, ServerProfile
from .services import AppServices
from .tokens import ModelTokenLimit, estimate


@dataclass
class ApiResponse:
    """Standard API response wrapper."""
    data: dict
    status: int = 200


@dataclass
class SubmitParams:
    """Parameters for a queued generation job."""
    prompt: str
    configuration: dict | str | None
    negative_prompt: str = ""
    name: Optional[str] = None
    canvas: Optional[str] = None  # Base64 PNG for img2img
    mask: Optional[str] = None  # Base64 PNG mask
    # Each entry: {"type": str, "image": base64 str, "weight": float}
    hints: list[dict] = field(default_factory=list)


@dataclass
class ProfileParams:
    name: str
    host: str = "localhost"
    port: int = DEFAULT_PORT
    use_tls: bool = True
    is_default: bool = False


def job_to_dict(job: GenerationJob) -> dict:
    """Job summary without image payloads."""
    progress = None
    if job.progress is not None:
        progress = {
            "current_step": job.progress.current_step,
            "total_steps": job.progress.total_steps,
            "stage": job.progress.stage,
            "percentage": job.progress.percentage,
            "has_preview": job.progress.preview_image is not None,
        }
    return {
        "job_id": job.id,
        "name": job.name,
        "prompt": job.prompt,
        "negative_prompt": job.negative_prompt,
        "configuration": job.configuration(),
        "status": job.status.value,
        "progress": progress,
        "error": job.error_message,
        "retry_count": job.retry_count,
        "can_retry": job.can_retry,
        "image_count": len(job.result_images),
        "hint_count": len(job.hints),
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "duration": job.duration,
    }


# Health & Connection

async def handle_health(services: AppServices) -> ApiResponse:
    """Handle health check request."""
    return ApiResponse(data={
        "status": "ok",
        "connection": services.connection.state.status.value,
        "queue_paused": services.queue.is_paused,
    })


async def handle_get_connection(services: AppServices) -> ApiResponse:
    """Handle get connection status request."""
    data = services.connection.snapshot().to_dict()
    data["models"] = services.connection.catalog.summary
    return ApiResponse(data=data)


async def handle_post_connection(services: AppServices, profile_id: Optional[str] = None) -> ApiResponse:
    """Connect to a profile, or to the default profile when none is given.

    Connection failures are reported in the returned state, not as an error status.
    """
    manager = services.connection
    if profile_id:
        profile = manager.get_profile(profile_id)
        if profile is None:
            return ApiResponse(data={"error": "Profile not found"}, status=404)
        await manager.connect(profile)
    else:
        await manager.connect_to_default()
    return await handle_get_connection(services)


async def handle_disconnect(services: AppServices) -> ApiResponse:
    services.connection.disconnect()
    return await handle_get_connection(services)


async def handle_reconnect(services: AppServices) -> ApiResponse:
    if services.connection.active_profile is None:
        return ApiResponse(data={"error": "No active profile to reconnect to"}, status=409)
    await services.connection.reconnect()
    return await handle_get_connection(services)


async def handle_get_models(services: AppServices) -> ApiResponse:
    """Handle model catalog request."""
    data = services.connection.catalog.to_dict()
    data["connected"] = services.connection.state.is_connected
    return ApiResponse(data=data)


# Profiles

async def handle_list_profiles(services: AppServices) -> ApiResponse:
    manager = services.connection
    default = manager.default_profile
    return ApiResponse(data={
        "profiles": [p.to_dict() for p in manager.profiles],
        "default_profile_id": default.id if default else None,
    })


async def handle_create_profile(services: AppServices, params: ProfileParams) -> ApiResponse:
    profile = ServerProfile(
        name=params.name,
        host=params.host,
        port=params.port,
        use_tls=params.use_tls,
        is_default=params.is_default,
    )
    try:
        created = services.connection.add_profile(profile)
    except ValidationError as e:
        return ApiResponse(data={"error": str(e)}, status=400)
    return ApiResponse(data=created.to_dict())


async def handle_update_profile(services: AppServices, profile_id: str, params: ProfileParams) -> ApiResponse:
    profile = ServerProfile(
        id=profile_id,
        name=params.name,
        host=params.host,
        port=params.port,
        use_tls=params.use_tls,
        is_default=params.is_default,
    )
    try:
        updated = services.connection.update_profile(profile)
    except ValidationError as e:
        return ApiResponse(data={"error": str(e)}, status=400)
    if not updated:
        return ApiResponse(data={"error": "Profile not found"}, status=404)
    return ApiResponse(data=services.connection.get_profile(profile_id).to_dict())


async def handle_delete_profile(services: AppServices, profile_id: str) -> ApiResponse:
    manager = services.connection
    if manager.get_profile(profile_id) is None:
        return ApiResponse(data={"error": "Profile not found"}, status=404)
    if not manager.delete_profile(profile_id):
        return ApiResponse(data={"error": "Cannot delete the only server profile"}, status=409)
    return ApiResponse(data={"profile_id": profile_id, "deleted": True})


async def handle_set_default_profile(services: AppServices, profile_id: str) -> ApiResponse:
    if not services.connection.set_default(profile_id):
        return ApiResponse(data={"error": "Profile not found"}, status=404)
    return await handle_list_profiles(services)


# Jobs

def _build_request(params: SubmitParams) -> JobRequest:
    """Decode base64 payloads into a job request.

    Raises:
        ValidationError: an image payload is not valid base64.
    """
    try:
        canvas = _decode_image(params.canvas, "canvas")
        mask = _decode_image(params.mask, "mask")
        hints = tuple(
            HintData(
                type=str(hint["type"]),
                image=_decode_image(hint["image"], "hint"),
                weight=float(hint.get("weight", 1.0)),
            )
            for hint in params.hints
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid hint: {e}")
    return JobRequest(
        prompt=params.prompt,
        configuration=params.configuration,
        negative_prompt=params.negative_prompt,
        name=params.name,
        canvas=canvas,
        mask=mask,
        hints=hints,
    )


async def handle_submit_job(services: AppServices, params: SubmitParams) -> ApiResponse:
    """Handle job submission.

    Returns:
        ApiResponse with the new job id, or error with status 400.
    """
    try:
        job_id = services.queue.submit(_build_request(params))
    except ValidationError as e:
        return ApiResponse(data={"error": str(e)}, status=400)
    return ApiResponse(data={"job_id": job_id, "status": JobStatus.pending.value})


async def handle_submit_jobs(services: AppServices, batch: list[SubmitParams]) -> ApiResponse:
    """Submit several jobs; nothing is queued if any of them is invalid."""
    try:
        job_ids = services.queue.submit_many([_build_request(params) for params in batch])
    except ValidationError as e:
        return ApiResponse(data={"error": str(e)}, status=400)
    return ApiResponse(data={"job_ids": job_ids, "status": JobStatus.pending.value})


async def handle_list_jobs(services: AppServices, status: Optional[str] = None) -> ApiResponse:
    jobs = services.queue.jobs
    if status:
        try:
            wanted = JobStatus(status)
        except ValueError:
            return ApiResponse(data={"error": f"Unknown status: {status}"}, status=400)
        jobs = tuple(job for job in jobs if job.status is wanted)
    return ApiResponse(data={"jobs": [job_to_dict(job) for job in jobs]})


async def handle_get_job(services: AppServices, job_id: str) -> ApiResponse:
    """Handle get job status request.

    Returns:
        ApiResponse with job status, or error with status 404.
    """
    job = services.queue.get(job_id)
    if not job:
        return ApiResponse(data={"error": "Job not found"}, status=404)
    return ApiResponse(data=job_to_dict(job))


async def handle_get_job_images(services: AppServices, job_id: str) -> ApiResponse:
    """Handle get job images request (base64 encoded).

    Returns:
        ApiResponse with images array, or error with status 400/404.
    """
    job = services.queue.get(job_id)
    if not job:
        return ApiResponse(data={"error": "Job not found"}, status=404)

    if job.status != JobStatus.completed:
        return ApiResponse(
            data={"error": f"Job not finished (status: {job.status.value})"},
            status=400
        )

    if not job.result_images:
        return ApiResponse(data={"error": "No images available"}, status=404)

    images_b64 = [base64.b64encode(img).decode("utf-8") for img in job.result_images]
    seed = job.configuration().get("seed")

    return ApiResponse(data={
        "job_id": job_id,
        "images": images_b64,
        "seed": seed,
    })


async def handle_get_job_image(services: AppServices, job_id: str, index: int) -> tuple[bytes, str] | ApiResponse:
    """Handle get single job image request (binary).

    Returns:
        tuple of (image_bytes, media_type) on success, or ApiResponse with error.
    """
    job = services.queue.get(job_id)
    if not job:
        return ApiResponse(data={"error": "Job not found"}, status=404)

    if job.status != JobStatus.completed:
        return ApiResponse(
            data={"error": f"Job not finished (status: {job.status.value})"},
            status=400
        )

    if index < 0 or index >= len(job.result_images):
        return ApiResponse(data={"error": "Image index out of range"}, status=404)

    return (job.result_images[index], "image/png")


async def handle_get_preview(services: AppServices) -> tuple[bytes, str] | ApiResponse:
    """Latest preview of the processing job, as binary PNG."""
    preview = services.queue.current_preview
    if preview is None:
        return ApiResponse(data={"error": "No preview available"}, status=404)
    return (preview, "image/png")


async def handle_cancel_job(services: AppServices, job_id: str) -> ApiResponse:
    """Handle cancel job request.

    Returns:
        ApiResponse with cancellation result, or error with status 404.
    """
    if services.queue.get(job_id) is None:
        return ApiResponse(data={"error": "Job not found"}, status=404)
    success = await services.queue.cancel(job_id)
    return ApiResponse(data={"job_id": job_id, "cancelled": success})


async def handle_retry_job(services: AppServices, job_id: str) -> ApiResponse:
    job = services.queue.get(job_id)
    if job is None:
        return ApiResponse(data={"error": "Job not found"}, status=404)
    if not services.queue.retry(job_id):
        return ApiResponse(
            data={"error": f"Job cannot be retried (status: {job.status.value}, retries: {job.retry_count})"},
            status=409
        )
    return ApiResponse(data={"job_id": job_id, "status": JobStatus.pending.value})


async def handle_delete_job(services: AppServices, job_id: str) -> ApiResponse:
    job = services.queue.get(job_id)
    if job is None:
        return ApiResponse(data={"error": "Job not found"}, status=404)
    if not services.queue.remove(job_id):
        return ApiResponse(data={"error": "Cannot delete a processing job, cancel it first"}, status=409)
    return ApiResponse(data={"job_id": job_id, "deleted": True})


async def handle_move_jobs(services: AppServices, from_indices: list[int], to_index: int) -> ApiResponse:
    if not services.queue.move_jobs(from_indices, to_index):
        return ApiResponse(data={"error": "No pending jobs at the given positions"}, status=409)
    return await handle_get_queue(services)


# Queue

async def handle_get_queue(services: AppServices) -> ApiResponse:
    snapshot = services.queue.snapshot()
    return ApiResponse(data={
        "paused": snapshot.is_paused,
        "processing": snapshot.is_processing,
        "current_job_id": snapshot.current_job_id,
        "last_error": snapshot.last_error,
        "counts": {status.value: snapshot.count(status) for status in JobStatus},
        "jobs": [job_to_dict(job) for job in snapshot.jobs],
    })


async def handle_pause_queue(services: AppServices) -> ApiResponse:
    services.queue.pause()
    return await handle_get_queue(services)


async def handle_resume_queue(services: AppServices) -> ApiResponse:
    services.queue.resume()
    return await handle_get_queue(services)


async def handle_clear_queue(services: AppServices, scope: str = "finished") -> ApiResponse:
    """Remove jobs by scope: completed, failed, finished or all."""
    queue = services.queue
    if scope == "completed":
        removed = queue.clear_completed()
    elif scope == "failed":
        removed = queue.clear_failed()
    elif scope == "finished":
        removed = queue.clear_finished()
    elif scope == "all":
        removed = await queue.clear_all()
    else:
        return ApiResponse(data={"error": f"Unknown scope: {scope}"}, status=400)
    return ApiResponse(data={"scope": scope, "removed": removed})


# Tokens

async def handle_estimate_tokens(
    text: str,
    model: Optional[str] = None,
    limit: Optional[int] = None,
) -> ApiResponse:
    """Estimate the prompt token count against a model's limit."""
    if limit is None:
        try:
            model_limit = ModelTokenLimit[model] if model else ModelTokenLimit.sd15
        except KeyError:
            return ApiResponse(data={"error": f"Unknown model: {model}"}, status=400)
        result = estimate(text, model_limit)
    else:
        result = estimate(text, limit)
    return ApiResponse(data=result.to_dict())


def _decode_image(data: Optional[str], what: str) -> Optional[bytes]:
    if not data:
        return None
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Invalid base64 {what}: {e}")
