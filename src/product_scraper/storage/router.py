"""FastAPI router for stored results.

Routes:
    GET    /api/storage/stats         - job counts and stored bytes
    GET    /api/storage/job/{job_id}  - CSV documents and result metadata
    DELETE /api/storage/clear         - stop active jobs, delete everything
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from product_scraper.api.dependencies import OrchestratorDep, StorageDep
from product_scraper.api.responses import ok
from product_scraper.core.exceptions import NotFoundError

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/stats")
async def storage_stats(request: Request, storage: StorageDep) -> JSONResponse:
    return ok(request, await storage.stats())


@router.get("/job/{job_id}")
async def stored_job_result(
    request: Request,
    job_id: str,
    storage: StorageDep,
) -> JSONResponse:
    """Return ``{parentCsv, variationCsv, metadata}`` for a finished job.

    ``variationCsv`` is ``""`` when the job produced no variations.

    Raises:
        NotFoundError: No result stored for *job_id*.
    """
    result = await storage.get_result(job_id)
    if result is None:
        raise NotFoundError("result", job_id)
    return ok(request, result.to_api())


@router.delete("/clear")
async def clear_storage(request: Request, orchestrator: OrchestratorDep) -> JSONResponse:
    """Delete every job and result.  Running jobs stop at their next batch."""
    removed = await orchestrator.clear()
    logger.warning("storage_cleared", jobs_removed=removed)
    return ok(request, {"jobsRemoved": removed}, message="Storage cleared")
