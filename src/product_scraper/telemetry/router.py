"""FastAPI router for performance telemetry.

Routes:
    GET /api/scrape/performance                  - all-time aggregates
    GET /api/scrape/performance/live             - active jobs and process load
    GET /api/scrape/performance/recommendations  - advisory tuning rules
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from product_scraper.api.dependencies import MonitorDep
from product_scraper.api.responses import ok

router = APIRouter()


@router.get("")
async def overall_performance(request: Request, monitor: MonitorDep) -> JSONResponse:
    return ok(request, await monitor.overall_metrics())


@router.get("/live")
async def live_performance(request: Request, monitor: MonitorDep) -> JSONResponse:
    return ok(request, monitor.live_metrics())


@router.get("/recommendations")
async def performance_recommendations(request: Request, monitor: MonitorDep) -> JSONResponse:
    return ok(request, await monitor.recommendations())
