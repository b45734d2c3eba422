"""FastAPI router for the studio jobs HTTP API."""

import logging
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.routing import APIRoute
from pydantic import BaseModel, ConfigDict

from studio_jobs.errors import (
    AuthTokenError,
    InsufficientCreditsError,
    JobAccessDeniedError,
    JobFailedError,
    JobNotFoundError,
    ProfileNotFoundError,
    TaskExecutionError,
    WaitCancelledError,
)
from studio_jobs.handlers.image_gen import collect_source_images
from studio_jobs.handlers.style_replicate import build_units
from studio_jobs.models import JobType
from studio_jobs.prompts import (
    build_prompt_messages,
    prompt_image_count,
    sse_event,
    stream_prompt_events,
)
from studio_jobs.registry import JobRegistry, job_registry
from studio_jobs.service import JobService
from studio_jobs.streaming import DONE_SENTINEL
from studio_jobs.pricing import style_replicate_image_size
from studio_jobs.waiter import JobNotifier, wait_for_job
from studio_jobs.worker import process_job


logger = logging.getLogger(__name__)

_JOB_META_FIELDS = {"trace_id", "client_job_id", "fe_attempt"}


class CreateJobRequest(BaseModel):
    """Fields shared by every job creation call. Unknown fields are kept in the payload."""

    model_config = ConfigDict(extra="allow")

    trace_id: Optional[str] = None
    client_job_id: Optional[str] = None
    fe_attempt: int = 1

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude=_JOB_META_FIELDS, exclude_none=True)


class AnalysisJobRequest(CreateJobRequest):
    productImage: Optional[str] = None
    productImages: Optional[List[str]] = None
    requirements: Optional[str] = None
    imageCount: int = 1
    outputLanguage: str = "en"


class ImageJobRequest(CreateJobRequest):
    model: str
    prompt: str
    productImage: Optional[str] = None
    productImages: Optional[List[str]] = None
    modelImage: Optional[str] = None
    workflowMode: str = "product"
    turboEnabled: bool = False
    imageSize: str = "2K"
    aspectRatio: str = "1:1"


class StyleReplicateJobRequest(CreateJobRequest):
    mode: str = "single"
    model: Optional[str] = None
    referenceImage: Optional[str] = None
    referenceImages: Optional[List[str]] = None
    productImage: Optional[str] = None
    productImages: Optional[List[str]] = None
    imageCount: int = 1
    groupCount: int = 1
    backgroundMode: str = "white"
    userPrompt: Optional[str] = None
    turboEnabled: bool = False
    imageSize: str = "2K"
    aspectRatio: str = "1:1"


class CreateJobResponse(BaseModel):
    job_id: str
    status: str


class ProcessJobRequest(BaseModel):
    job_id: str


class ProcessJobResponse(BaseModel):
    ok: bool
    status: str
    job_id: str


class RegisterProfileRequest(BaseModel):
    email: Optional[str] = None


class PromptStreamRequest(BaseModel):
    analysisJson: Union[Dict[str, Any], str]
    design_specs: Optional[Union[Dict[str, Any], str]] = None
    imageCount: Optional[int] = None
    language: str = "en"


class JobResponse(BaseModel):
    """Response model for job details."""

    id: str
    user_id: str
    type: str
    status: str
    payload: Dict[str, Any]
    cost_amount: int
    subscription_deducted: int
    purchased_deducted: int
    is_refunded: bool
    result_data: Optional[Dict[str, Any]] = None
    result_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    trace_id: Optional[str] = None
    client_job_id: Optional[str] = None
    fe_attempt: int
    be_retry: int
    duration_ms: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def error_response(
    status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    """The ``{"error": {"code", "message"}}`` envelope."""
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})


class EnvelopeRoute(APIRoute):
    """Route that answers auth failures raised by dependencies with the error envelope."""

    def get_route_handler(self) -> Callable:
        route_handler = super().get_route_handler()

        async def envelope_route_handler(request: Request) -> Response:
            try:
                return await route_handler(request)
            except AuthTokenError as e:
                return error_response(401, "UNAUTHORIZED", str(e))

        return envelope_route_handler


def create_jobs_router(
    job_service_factory: Callable[[], JobService],
    auth_token: Optional[str] = None,
    registry: Optional[JobRegistry] = None,
    upstream: Any = None,
    notifier_factory: Optional[Callable[[], JobNotifier]] = None,
    events_timeout_seconds: float = 300.0,
) -> APIRouter:
    """
    Create FastAPI router for the studio jobs API.

    Args:
        job_service_factory: Callable that returns a JobService instance
        auth_token: Optional shared token required in X-Studio-Jobs-Token
        registry: Handler registry used by the nudge endpoint
        upstream: AI client for the nudge and prompt stream endpoints
        notifier_factory: Push channel for the job events endpoint; polling
            alone is used when it is None
        events_timeout_seconds: How long one events stream stays open

    Returns:
        APIRouter instance
    """
    router = APIRouter(route_class=EnvelopeRoute)
    registry = registry or job_registry

    async def get_job_service() -> JobService:
        """Dependency to get JobService instance."""
        return job_service_factory()

    async def verify_auth_token(
        x_studio_jobs_token: Optional[str] = Header(None, alias="X-Studio-Jobs-Token")
    ) -> None:
        """Verify auth token if configured."""
        if auth_token:
            if not x_studio_jobs_token or x_studio_jobs_token != auth_token:
                raise AuthTokenError("Invalid or missing auth token")

    async def get_user_id(
        x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
        _: None = Depends(verify_auth_token),
    ) -> str:
        """The authenticated user, as forwarded by the gateway."""
        if not x_user_id:
            raise AuthTokenError("Missing X-User-Id header")
        return x_user_id

    async def create(
        job_service: JobService,
        user_id: str,
        job_type: JobType,
        request: CreateJobRequest,
        cost_amount: int,
    ):
        try:
            job = await job_service.create_job(
                user_id=user_id,
                type=job_type,
                payload=request.payload(),
                cost_amount=cost_amount,
                trace_id=request.trace_id,
                client_job_id=request.client_job_id,
                fe_attempt=request.fe_attempt,
            )
            return CreateJobResponse(job_id=str(job.id), status=job.status.value)
        except InsufficientCreditsError as e:
            return error_response(
                402,
                e.code,
                str(e),
                {"required": e.required, "available": e.available},
            )
        except ProfileNotFoundError as e:
            return error_response(404, "PROFILE_NOT_FOUND", str(e))
        except Exception:
            logger.exception("Error creating job")
            return error_response(500, "INTERNAL_ERROR", "Internal server error")

    @router.post("/jobs/analysis", response_model=CreateJobResponse)
    async def create_analysis_job(
        request: AnalysisJobRequest,
        user_id: str = Depends(get_user_id),
        job_service: JobService = Depends(get_job_service),
    ):
        """Queue a product analysis. Analysis is free."""
        if not request.productImage and not request.productImages:
            return error_response(400, "ANALYSIS_INPUT_IMAGE_MISSING", "productImage is required")
        return await create(job_service, user_id, JobType.ANALYSIS, request, 0)

    @router.post("/jobs/image", response_model=CreateJobResponse)
    async def create_image_job(
        request: ImageJobRequest,
        user_id: str = Depends(get_user_id),
        job_service: JobService = Depends(get_job_service),
    ):
        """Queue a single image generation."""
        if not request.prompt.strip():
            return error_response(400, "IMAGE_INPUT_PROMPT_MISSING", "prompt is required")
        if request.workflowMode == "model" and not request.modelImage:
            return error_response(400, "IMAGE_INPUT_SOURCE_MISSING", "modelImage is required")
        if not collect_source_images(request.payload()):
            return error_response(400, "IMAGE_INPUT_SOURCE_MISSING", "A source image is required")

        try:
            table = await job_service.get_cost_table()
        except Exception:
            logger.exception("Error loading credit costs")
            return error_response(500, "INTERNAL_ERROR", "Internal server error")
        cost = table.compute_cost(request.model, request.turboEnabled, request.imageSize)
        return await create(job_service, user_id, JobType.IMAGE_GEN, request, cost)

    @router.post("/jobs/style-replicate", response_model=CreateJobResponse)
    async def create_style_replicate_job(
        request: StyleReplicateJobRequest,
        user_id: str = Depends(get_user_id),
        job_service: JobService = Depends(get_job_service),
    ):
        """Queue a style replication; cost is the unit cost times the number of images."""
        if request.mode not in ("single", "batch", "refinement"):
            return error_response(400, "BATCH_INPUT_INVALID", f"Unknown mode {request.mode}")
        try:
            units = build_units(request.payload())
        except TaskExecutionError as e:
            return error_response(400, e.code, e.message)

        try:
            table = await job_service.get_cost_table()
        except Exception:
            logger.exception("Error loading credit costs")
            return error_response(500, "INTERNAL_ERROR", "Internal server error")
        cost = table.compute_cost(
            request.model,
            request.turboEnabled,
            style_replicate_image_size(request.imageSize),
            unit_count=len(units),
        )
        return await create(job_service, user_id, JobType.STYLE_REPLICATE, request, cost)

    @router.post("/jobs/process", response_model=ProcessJobResponse)
    async def process(
        request: ProcessJobRequest,
        job_service: JobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """Worker nudge: run the claim protocol for one job right now."""
        try:
            job_uuid = UUID(request.job_id)
        except ValueError:
            return error_response(400, "BAD_REQUEST", "Invalid job ID format")
        if upstream is None:
            # Left for the polling workers.
            return error_response(503, "UPSTREAM_UNAVAILABLE", "No AI endpoint configured")

        try:
            outcome = await process_job(job_service, registry, job_uuid, logger, upstream)
            return ProcessJobResponse(ok=True, status=outcome.value, job_id=request.job_id)
        except JobNotFoundError as e:
            return error_response(404, "JOB_NOT_FOUND", str(e))
        except Exception:
            logger.exception("Error processing job")
            return error_response(500, "INTERNAL_ERROR", "Internal server error")

    @router.get("/jobs/{job_id}", response_model=JobResponse)
    async def get_job(
        job_id: str,
        user_id: str = Depends(get_user_id),
        job_service: JobService = Depends(get_job_service),
    ):
        """Get job details by ID."""
        try:
            job_uuid = UUID(job_id)
        except ValueError:
            return error_response(400, "BAD_REQUEST", "Invalid job ID format")

        try:
            job = await job_service.get_job_for_user(job_uuid, user_id)
        except JobNotFoundError as e:
            return error_response(404, "JOB_NOT_FOUND", str(e))
        except JobAccessDeniedError as e:
            return error_response(403, "FORBIDDEN", str(e))
        except Exception:
            logger.exception("Error getting job")
            return error_response(500, "INTERNAL_ERROR", "Internal server error")

        return JobResponse(**job.to_dict())

    @router.get("/jobs/{job_id}/events")
    async def job_events(
        job_id: str,
        user_id: str = Depends(get_user_id),
        job_service: JobService = Depends(get_job_service),
    ):
        """Server-sent events for one job, ending with [DONE] once it is terminal."""
        try:
            job_uuid = UUID(job_id)
            job = await job_service.get_job_for_user(job_uuid, user_id)
        except ValueError:
            return error_response(400, "BAD_REQUEST", "Invalid job ID format")
        except JobNotFoundError as e:
            return error_response(404, "JOB_NOT_FOUND", str(e))
        except JobAccessDeniedError as e:
            return error_response(403, "FORBIDDEN", str(e))

        notifier =notifier_factory() if notifier_factory else None

        async def stream():
            yield sse_event({"job_id": job_id, "status": job.status.value})
            if not job.is_terminal:
                try:
                    final = await wait_for_job(
                        job_uuid,
                        fetch_job=job_service.get_job,
                        notifier=notifier,
                        poll_interval=job_service.config.wait_poll_interval_seconds,
                        timeout=events_timeout_seconds,
                        logger=logger,
                    )
                    yield sse_event({"job_id": job_id, "status": final.status.value})
                except JobFailedError as e:
                    yield sse_event(
                        {
                            "job_id": job_id,
                            "status": e.job.status.value,
                            "error_code": e.job.error_code,
                            "error_message": e.job.error_message,
                        }
                    )
                except WaitCancelledError:
                    # Client reconnects or falls back to polling.
                    return
            yield sse_event(DONE_SENTINEL)

        return StreamingResponse(stream(), media_type="text/event-stream")

    @router.get("/jobs", response_model=List[JobResponse])
    async def list_jobs(
        status: Optional[str] = Query(None),
        type: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
        user_id: str = Depends(get_user_id),
        job_service: JobService = Depends(get_job_service),
    ):
        """List the caller's jobs, newest first."""
        try:
            jobs = await job_service.list_jobs(
                user_id=user_id, status=status, type=type, limit=limit
            )
            return [JobResponse(**job.to_dict()) for job in jobs]
        except Exception:
            logger.exception("Error listing jobs")
            return error_response(500, "INTERNAL_ERROR", "Internal server error")

    @router.get("/credits")
    async def get_credits(
        user_id: str = Depends(get_user_id),
        job_service: JobService = Depends(get_job_service),
    ):
        """The caller's credit balance."""
        try:
            profile = await job_service.get_balance(user_id)
            return profile.to_dict()
        except ProfileNotFoundError as e:
            return error_response(404, "PROFILE_NOT_FOUND", str(e))

    @router.post("/profiles")
    async def register_profile(
        request: RegisterProfileRequest,
        user_id: str = Depends(get_user_id),
        job_service: JobService = Depends(get_job_service),
    ):
        """Create the caller's profile with the signup bonus; repeat calls change nothing."""
        profile = await job_service.register_user(user_id, request.email)
        return profile.to_dict()

    @router.get("/config/public")
    async def public_config(job_service: JobService = Depends(get_job_service)):
        table = await job_service.get_cost_table()
        return {
            "credit_costs": table.to_dict(),
            "signup_bonus_credits": await job_service.get_signup_bonus(),
        }

    @router.post("/prompts/stream")
    async def stream_prompts(
        request: PromptStreamRequest,
        user_id: str = Depends(get_user_id),
    ):
        """Stream prompt synthesis for a blueprint as server-sent events."""
        if upstream is None:
            return error_response(503, "UPSTREAM_UNAVAILABLE", "No AI endpoint configured")
        messages = build_prompt_messages(
            request.analysisJson,
            prompt_image_count(request.analysisJson, request.imageCount),
            request.language,
            request.design_specs,
        )
        return StreamingResponse(
            stream_prompt_events(upstream, messages, logger),
            media_type="text/event-stream",
        )

    return router
