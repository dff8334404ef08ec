"""Shared pytest fixtures for product scraper tests.

Fixture summary
---------------
recipes_dir   - Temporary recipe directory holding ``test-shop`` and a
                deliberately broken recipe.
settings      - Settings against a per-test SQLite file, with no delays,
                no retry backoff and rate limiting off.
engine        - Async engine with all tables created.
storage       - ScrapeStorage bound to the engine.
registry      - RecipeRegistry with the built-ins plus ``recipes_dir``.
orchestrator  - JobOrchestrator with no dispatcher bound (jobs stay pending).
app           - FastAPI app with its lifespan running.
client        - httpx.AsyncClient against ``app``.

Everything runs without external infrastructure: the database is a SQLite
file under ``tmp_path`` and target sites are mocked with respx or an
``httpx.MockTransport``.
"""

from __future__ import annotations

import json
import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine

# ---------------------------------------------------------------------------
# Test environment bootstrap
# ---------------------------------------------------------------------------
# Set env vars before any application modules are imported:
# ``product_scraper.api.main`` builds its module-level app from
# ``get_settings()`` at import time.

_TEST_ENV_DEFAULTS: dict[str, str] = {
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "RATE_LIMIT_ENABLED": "false",
    "LOG_LEVEL": "WARNING",
    "DEFAULT_DELAY_MS": "0",
    "RETRY_BACKOFF_SECONDS": "0",
}

for _key, _default in _TEST_ENV_DEFAULTS.items():
    os.environ.setdefault(_key, _default)

# ---------------------------------------------------------------------------
# Application imports (after env bootstrap)
# ---------------------------------------------------------------------------

from product_scraper.api.main import create_app  # noqa: E402
from product_scraper.config.settings import Settings, get_settings  # noqa: E402
from product_scraper.core.database import (  # noqa: E402
    build_engine,
    build_sessionmaker,
    create_tables,
)
from product_scraper.recipes.loader import RecipeRegistry  # noqa: E402
from product_scraper.scraper.orchestrator import JobOrchestrator  # noqa: E402
from product_scraper.storage.store import ScrapeStorage  # noqa: E402
from tests.factories.recipes import RecipeDataFactory  # noqa: E402

# Clear the lru_cache so Settings() re-reads from the patched environment.
get_settings.cache_clear()

SITE: str = "https://shop.test"
"""Base URL of the fake storefront served by respx in engine and API tests."""

BROKEN_RECIPE: dict = {"name": "broken", "siteUrl": "broken.test", "selectors": {"title": "h1"}}
"""Recipe missing its required ``price`` and ``images`` selectors."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def recipes_dir(tmp_path: Path) -> Path:
    """A recipe directory with one valid and one rejected recipe."""
    directory = tmp_path / "recipes"
    directory.mkdir()
    (directory / "test-shop.json").write_text(json.dumps(RecipeDataFactory()), encoding="utf-8")
    (directory / "broken.json").write_text(json.dumps(BROKEN_RECIPE), encoding="utf-8")
    return directory


@pytest.fixture
def settings(tmp_path: Path, recipes_dir: Path) -> Settings:
    """Settings isolated to this test.

    Delays and backoff are zero so engine tests run at full speed; the
    adaptive delay can still grow after errors, but only by ~100 ms steps.
    """
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        recipes_dir=str(recipes_dir),
        log_level="WARNING",
        default_delay_ms=0,
        min_delay_ms=0,
        retry_backoff_seconds=0,
        rate_limit_enabled=False,
    )


# ---------------------------------------------------------------------------
# Persistence and engine objects
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine on the per-test SQLite file with tables created.

    Created inside the test's event loop so the aiosqlite connections are
    bound to it.
    """
    engine = build_engine(settings.database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def storage(engine: AsyncEngine) -> ScrapeStorage:
    return ScrapeStorage(build_sessionmaker(engine))


@pytest.fixture
def registry(settings: Settings) -> RecipeRegistry:
    return RecipeRegistry(settings.recipes_dir).load()


@pytest.fixture
def orchestrator(
    storage: ScrapeStorage,
    registry: RecipeRegistry,
    settings: Settings,
) -> JobOrchestrator:
    """Orchestrator without a dispatcher: created jobs stay ``pending``."""
    return JobOrchestrator(storage, registry, settings)


# ---------------------------------------------------------------------------
# FastAPI application and client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def app(settings: Settings) -> AsyncGenerator[FastAPI, None]:
    """The application with its lifespan entered.

    httpx's ``ASGITransport`` does not send lifespan events, so the
    lifespan context is entered here to build the engine objects on
    ``app.state``.
    """
    application = create_app(settings)
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Yield an httpx.AsyncClient against the running app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
