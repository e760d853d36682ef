from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import Response

from taxis.core.config import settings
from taxis.core.exceptions import AppError, JobNotFoundError
from taxis.dependencies import get_job_engine, get_job_repository, run_job_slice
from taxis.repositories.job_repository import JobRepository
from taxis.schemas.jobs import JobStatusResponse, JobSummaryResponse, SliceSummaryResponse
from taxis.services.job_engine import JobEngine
from taxis.services.storage_service import BlobStore, get_blob_store
from taxis.utils.logging import get_logger
from taxis.utils.responses import create_api_response, create_error_detail

LOGGER = get_logger(__name__)

router = APIRouter()


def _not_found(request: Request, job_id: UUID) -> HTTPException:
    error_detail = create_error_detail(
        title="Job Not Found",
        status=status.HTTP_404_NOT_FOUND,
        detail=f"Job {job_id} not found",
        request=request
    )
    return HTTPException(status_code=404, detail=error_detail.model_dump(mode="json"))


async def _run_slice_in_background(job_id: UUID) -> None:
    try:
        await run_job_slice(job_id)
    except Exception:
        # Left for the watchdog to reclaim.
        LOGGER.error(f"Background slice for job {job_id} failed", exc_info=True)


@router.get(
    "",
    summary="List the caller's jobs",
    operation_id="list_jobs",
)
async def list_jobs(
    request: Request,
    jobs: Annotated[JobRepository, Depends(get_job_repository)],
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
    limit: int = Query(100, ge=1, le=500),
):
    """Jobs for the dashboard, newest first."""
    rows = await jobs.list_for_user(user_id, limit=limit)

    data = [
        JobSummaryResponse(
            id=job.id,
            file_name=original_name,
            status=job.status,
            rows_total=job.rows_total,
            rows_processed=job.rows_processed,
            created_at=job.created_at,
            finished_at=job.finished_at,
            output_url=(
                f"{settings.api_v1_prefix}/jobs/{job.id}/output" if job.output_blob_key else None
            ),
        )
        for job, original_name in rows
    ]
    return create_api_response(
        data=data,
        message=f"Retrieved {len(data)} jobs",
        request=request
    )


@router.post(
    "/{job_id}/process",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run one processing slice",
    operation_id="process_job_slice",
)
async def process_job(
    request: Request,
    job_id: UUID,
    background_tasks: BackgroundTasks,
    engine: Annotated[JobEngine, Depends(get_job_engine)],
    jobs: Annotated[JobRepository, Depends(get_job_repository)],
    background: bool = Query(False, description="Schedule the slice and return immediately"),
):
    """Trigger endpoint for the worker.

    Runs one slice and returns its summary. Calling it for a finished job
    is a no-op that reports the terminal status. With ``background=true``
    the slice is scheduled after the response is sent.
    """
    if background:
        if await jobs.get_by_id(job_id) is None:
            raise _not_found(request, job_id)
        background_tasks.add_task(_run_slice_in_background, job_id)
        return create_api_response(
            data={"job_id": str(job_id), "scheduled": True},
            message="Slice scheduled",
            request=request
        )

    try:
        result = await engine.run_slice(job_id)
    except JobNotFoundError:
        raise _not_found(request, job_id)
    except AppError as e:
        LOGGER.error(f"Slice failed for job {job_id}: {e}", exc_info=True)
        error_detail = create_error_detail(
            title="Job Slice Failed",
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
            request=request
        )
        raise HTTPException(status_code=500, detail=error_detail.model_dump(mode="json"))
    except Exception as e:
        LOGGER.error(f"Unexpected error in slice for job {job_id}", exc_info=True)
        error_detail = create_error_detail(
            title="Job Slice Failed",
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Unexpected error: {e}",
            request=request
        )
        raise HTTPException(status_code=500, detail=error_detail.model_dump(mode="json"))

    return create_api_response(
        data=SliceSummaryResponse(**result.to_dict()),
        message=f"Job {result.status}",
        request=request
    )


@router.get(
    "/{job_id}",
    summary="Get job status",
    operation_id="get_job_status",
)
async def get_job(
    request: Request,
    job_id: UUID,
    jobs: Annotated[JobRepository, Depends(get_job_repository)],
):
    """Job status and progress, for polling."""
    job = await jobs.get_by_id(job_id)
    if job is None:
        raise _not_found(request, job_id)

    return create_api_response(
        data=JobStatusResponse.model_validate(job),
        message="Job retrieved",
        request=request
    )


@router.get(
    "/{job_id}/output",
    summary="Download the job report",
    operation_id="download_job_output",
    response_class=Response,
)
async def download_output(
    request: Request,
    job_id: UUID,
    jobs: Annotated[JobRepository, Depends(get_job_repository)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
):
    """Return the CSV report written so far."""
    job = await jobs.get_by_id(job_id)
    if job is None:
        raise _not_found(request, job_id)

    content = None
    if job.output_blob_key:
        content = await blob_store.get_bytes(settings.storage.outputs_bucket, job.output_blob_key)
    if content is None:
        error_detail = create_error_detail(
            title="Output Not Ready",
            status=status.HTTP_404_NOT_FOUND,
            detail=f"No output has been written for job {job_id} yet",
            request=request
        )
        raise HTTPException(status_code=404, detail=error_detail.model_dump(mode="json"))

    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{job_id}.csv"'},
    )
