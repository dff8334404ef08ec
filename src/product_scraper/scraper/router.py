"""FastAPI router for scrape jobs.

Routes:
    POST /api/scrape/init                      - validate, create and queue a job
    GET  /api/scrape/status/{job_id}           - job snapshot
    GET  /api/scrape/jobs                      - all jobs, most recent first
    POST /api/scrape/cancel/{job_id}           - cancel a pending or running job
    GET  /api/scrape/download/{job_id}/{type}  - parent or variation CSV

Errors raised by the orchestrator propagate to the exception handlers in
``api/main.py``, which render them into the standard envelope.
"""

from __future__ import annotations

from typing import Literal

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, Response

from product_scraper.api.dependencies import OrchestratorDep, StorageDep
from product_scraper.api.limiter import init_rate_limit, limiter
from product_scraper.api.responses import ok
from product_scraper.core.exceptions import NotFoundError
from product_scraper.core.schemas.jobs import JobStatus, ScrapeInitRequest
from product_scraper.scraper.csv_generator import to_download_bytes

logger = structlog.get_logger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post("/init", status_code=status.HTTP_201_CREATED)
@limiter.limit(init_rate_limit)
async def init_job(
    request: Request,
    payload: ScrapeInitRequest,
    orchestrator: OrchestratorDep,
) -> JSONResponse:
    """Create a scrape job and queue it for execution.

    Returns as soon as the job is persisted as ``pending``; poll
    ``/status/{jobId}`` for progress.

    Raises:
        ValidationError: Missing or malformed ``siteUrl``, missing or unknown recipe.
        RecipeError: The recipe failed validation when it was loaded.
    """
    job = await orchestrator.init(payload.site_url, payload.recipe, payload.options)
    logger.info(
        "scrape_job_created",
        job_id=job.id,
        site_url=job.site_url,
        recipe=job.recipe_name,
    )
    return ok(
        request,
        {"jobId": job.id},
        message="Scraping job created",
        status_code=status.HTTP_201_CREATED,
    )


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


@router.get("/status/{job_id}")
async def get_job_status(
    request: Request,
    job_id: str,
    orchestrator: OrchestratorDep,
) -> JSONResponse:
    job = orchestrator.get_status(job_id)
    return ok(request, job.to_api())


@router.get("/jobs")
async def list_jobs(request: Request, orchestrator: OrchestratorDep) -> JSONResponse:
    """All known jobs, most recent first."""
    return ok(request, [job.to_api() for job in orchestrator.list_jobs()])


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


@router.post("/cancel/{job_id}")
async def cancel_job(
    request: Request,
    job_id: str,
    orchestrator: OrchestratorDep,
) -> JSONResponse:
    """Cancel a job.

    A pending job is cancelled at once.  A running job is flagged and stops
    at its next batch boundary, so the returned snapshot may still read
    ``running`` with ``metadata.cancelRequested`` set.

    Raises:
        NotFoundError: Unknown job id (404).
        InvalidStateError: The job already finished (409).
    """
    job = await orchestrator.cancel(job_id)
    logger.info("scrape_job_cancel_requested", job_id=job_id, status=job.status.value)
    message = (
        "Job cancelled"
        if job.status is JobStatus.CANCELLED
        else "Cancellation requested; the job stops after its current batch"
    )
    return ok(request, job.to_api(), message=message)


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


@router.get("/download/{job_id}/{csv_type}")
async def download_csv(
    job_id: str,
    csv_type: Literal["parent", "variation"],
    storage: StorageDep,
) -> Response:
    """Serve a stored CSV with a UTF-8 BOM.

    Raises:
        NotFoundError: No result stored for the job, or the job produced no
            variations and ``csv_type`` is ``variation``.
    """
    result = await storage.get_result(job_id)
    if result is None:
        raise NotFoundError("result", job_id)
    document = result.parent_csv if csv_type == "parent" else result.variation_csv
    if document is None:
        raise NotFoundError("variation CSV", job_id)

    filename = f"{result.metadata.get('filename') or job_id}-{csv_type}.csv"
    logger.info("scrape_csv_downloaded", job_id=job_id, csv_type=csv_type)
    return Response(
        content=to_download_bytes(document),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
