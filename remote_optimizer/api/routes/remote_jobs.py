"""Remote optimization API routes."""

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from remote_optimizer.core.exceptions import (
    ConfigurationError,
    JobNotFoundError,
    JobStateError,
    ProvisioningError,
    RemoteOptimizerError,
)
from remote_optimizer.jobs.record import JobSnapshot, TriggeredBy
from remote_optimizer.services.remote_optimization_service import RemoteLogResult, RemoteOptimizationService

router = APIRouter()


class TriggerRequest(BaseModel):
    """Request model for starting a remote optimization."""

    template_name: str | None = None
    triggered_by: TriggeredBy = Field(default_factory=TriggeredBy)


class StopRequest(BaseModel):
    job_id: str = Field(..., min_length=1)


class StopResponse(BaseModel):
    ok: bool
    job_id: str
    template_id: str
    server_deleted: bool


class DeleteFinishedResponse(BaseModel):
    deleted: int


def get_remote_optimizer(request: Request) -> RemoteOptimizationService:
    service = getattr(request.app.state, "remote_optimizer", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Remote optimizer is not initialized")
    return service


def to_http_error(exc: RemoteOptimizerError) -> HTTPException:
    if isinstance(exc, JobNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, JobStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ProvisioningError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.post("/templates/{template_id}/remote-optimize", status_code=201, response_model=JobSnapshot)
async def trigger_remote_optimization(
    template_id: str,
    body: TriggerRequest,
    service: RemoteOptimizationService = Depends(get_remote_optimizer),
):
    """Provision a VM and hand the template's optimization run off to it.

    Raises:
        HTTPException(409): An active job already exists for the template
        HTTPException(503): Hetzner token or SSH key is not configured
    """
    if await service.has_active_job(template_id):
        raise HTTPException(
            status_code=409,
            detail=f"A remote optimization is already active for template {template_id}.",
        )
    try:
        return await service.trigger_optimization(template_id, body.template_name, body.triggered_by)
    except RemoteOptimizerError as exc:
        raise to_http_error(exc) from exc


@router.post("/templates/{template_id}/remote-optimize/stop", response_model=StopResponse)
async def stop_remote_optimization(
    template_id: str,
    body: StopRequest,
    service: RemoteOptimizationService = Depends(get_remote_optimizer),
):
    job = await service.get_job(body.job_id)
    if job is None or job.template_id != template_id:
        raise to_http_error(JobNotFoundError(body.job_id))
    try:
        result = await service.stop_optimization(body.job_id)
    except RemoteOptimizerError as exc:
        raise to_http_error(exc) from exc
    return StopResponse(
        ok=True,
        job_id=result.job.id,
        template_id=result.job.template_id,
        server_deleted=result.server_deleted,
    )


@router.get("/remote-jobs", response_model=list[JobSnapshot])
async def list_remote_jobs(service: RemoteOptimizationService = Depends(get_remote_optimizer)):
    return await service.list_jobs()


@router.delete("/remote-jobs/finished", response_model=DeleteFinishedResponse)
async def delete_finished_remote_jobs(service: RemoteOptimizationService = Depends(get_remote_optimizer)):
    return DeleteFinishedResponse(deleted=await service.delete_finished_jobs())


@router.get("/remote-jobs/{job_id}", response_model=JobSnapshot)
async def get_remote_job(job_id: str, service: RemoteOptimizationService = Depends(get_remote_optimizer)):
    job = await service.get_job(job_id)
    if job is None:
        raise to_http_error(JobNotFoundError(job_id))
    return job


@router.get("/remote-jobs/{job_id}/log", response_model=RemoteLogResult)
async def get_remote_job_log(job_id: str, service: RemoteOptimizationService = Depends(get_remote_optimizer)):
    try:
        return await service.get_remote_log(job_id)
    except RemoteOptimizerError as exc:
        raise to_http_error(exc) from exc
