"""FastAPI dependency providers.

The engine objects are built once in the application lifespan and stored on
``app.state``; these providers hand them to route handlers.  Tests override
them with ``app.dependency_overrides`` or by swapping ``app.state`` entries.

Usage::

    @router.get("/jobs")
    async def list_jobs(orchestrator: OrchestratorDep) -> JSONResponse:
        ...
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from product_scraper.config.settings import Settings, get_settings
from product_scraper.recipes.loader import RecipeRegistry
from product_scraper.scraper.orchestrator import JobOrchestrator
from product_scraper.scraper.scheduler import JobDispatcher
from product_scraper.storage.store import ScrapeStorage
from product_scraper.telemetry.monitor import PerformanceMonitor


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_registry(request: Request) -> RecipeRegistry:
    return request.app.state.recipes


def get_storage(request: Request) -> ScrapeStorage:
    return request.app.state.storage


def get_dispatcher(request: Request) -> JobDispatcher:
    return request.app.state.dispatcher


def get_monitor(request: Request) -> PerformanceMonitor:
    return request.app.state.monitor


OrchestratorDep = Annotated[JobOrchestrator, Depends(get_orchestrator)]
RegistryDep = Annotated[RecipeRegistry, Depends(get_registry)]
StorageDep = Annotated[ScrapeStorage, Depends(get_storage)]
DispatcherDep = Annotated[JobDispatcher, Depends(get_dispatcher)]
MonitorDep = Annotated[PerformanceMonitor, Depends(get_monitor)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
