"""Job orchestrator: the job state machine and sole owner of job mutation.

States::

    pending ──> running ──> completed
       │           ├──────> failed
       │           └──────> cancelled
       └──────────────────> cancelled

Nothing leaves ``completed``, ``failed`` or ``cancelled``.

Every mutation of a job runs under that job's ``asyncio.Lock``, replaces the
in-memory snapshot and persists it through
:class:`~product_scraper.storage.store.ScrapeStorage`.  Callers only ever
receive copies, so concurrent extraction tasks cannot lose each other's
updates.

Cancellation is cooperative.  :meth:`JobOrchestrator.cancel` moves a pending
job straight to ``cancelled``.  For a running job it only raises a flag; the
scheduler polls :meth:`is_cancel_requested` at batch boundaries and answers
with :meth:`acknowledge_cancel`, which discards everything extracted so far.

:meth:`complete` and :meth:`fail` are idempotent: once a job is terminal,
further terminal calls are logged and ignored, since natural completion
races with cancellation.
"""

from __future__ import annotations

import asyncio
import logging
import re
import urllib.parse
import uuid
from datetime import datetime, timezone
from contextlib import AsyncExitStack
from typing import Any, Callable

from product_scraper.api.metrics import scrape_jobs_total
from product_scraper.config.settings import Settings, get_settings
from product_scraper.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from product_scraper.core.schemas.jobs import (
    ALLOWED_TRANSITIONS,
    Job,
    JobOptions,
    JobStatus,
)
from product_scraper.core.schemas.recipes import Recipe
from product_scraper.recipes.loader import RecipeRegistry
from product_scraper.scraper.csv_generator import CsvArtifacts
from product_scraper.scraper.normalizer import slugify
from product_scraper.storage.store import ScrapeStorage

logger = logging.getLogger(__name__)

#: Shape a ``siteUrl`` must have.
SITE_URL_PATTERN = re.compile(r"^https?://.+", re.IGNORECASE)

#: Error recorded on jobs found running when the service starts.
INTERRUPTED_ERROR = "Interrupted by service restart"

#: Bounds of the effective per-request timeout (ms).
MIN_REQUEST_TIMEOUT_MS = 5_000
MAX_REQUEST_TIMEOUT_MS = 120_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_options(
    options: JobOptions | None,
    recipe: Recipe,
    settings: Settings,
) -> JobOptions:
    """Fill option gaps: request first, then recipe behaviour, then settings.

    ``jobTimeout`` can lower but never raise ``settings.job_timeout_seconds``.
    """
    requested = options or JobOptions()
    behavior = recipe.behavior

    delay = requested.delay
    if delay is None:
        delay = behavior.rate_limit if behavior.rate_limit is not None else settings.default_delay_ms
    timeout = requested.timeout or behavior.timeout or settings.default_timeout_ms
    job_timeout = requested.job_timeout or settings.job_timeout_seconds

    return JobOptions(
        max_products=requested.max_products or settings.default_max_products,
        delay=delay,
        timeout=min(max(timeout, MIN_REQUEST_TIMEOUT_MS), MAX_REQUEST_TIMEOUT_MS),
        max_concurrent=requested.max_concurrent
        or behavior.max_concurrent
        or settings.default_max_concurrent,
        batch_size=requested.batch_size or settings.default_batch_size,
        max_pages=requested.max_pages or settings.default_max_pages,
        job_timeout=min(job_timeout, settings.job_timeout_seconds),
    )


class JobOrchestrator:
    """Single source of truth for job state.

    Args:
        storage: Repository used to persist job snapshots and results.
        recipes: Registry used to validate recipe names at init.
        settings: Application settings; defaults to :func:`get_settings`.
    """

    def __init__(
        self,
        storage: ScrapeStorage,
        recipes: RecipeRegistry,
        settings: Settings | None = None,
    ) -> None:
        self._storage = storage
        self._recipes = recipes
        self._settings = settings or get_settings()
        self._jobs: dict[str, Job] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._cancel_requested: set[str] = set()
        self._submit: Callable[[str], Any] | None = None

    @property
    def storage(self) -> ScrapeStorage:
        return self._storage

    @property
    def recipes(self) -> RecipeRegistry:
        return self._recipes

    def bind_dispatcher(self, submit: Callable[[str], Any]) -> None:
        """Register the callable that queues a job id for execution."""
        self._submit = submit

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("job", job_id)
        return job

    def _lock(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            raise NotFoundError("job", job_id)
        return lock

    @staticmethod
    def _transition(job: Job, status: JobStatus, **changes: Any) -> Job:
        if status not in ALLOWED_TRANSITIONS[job.status]:
            raise InvalidStateError(job.id, job.status.value, f"move to {status.value}")
        now = _utcnow()
        changes.setdefault("updated_at", now)
        if status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
            changes.setdefault("completed_at", now)
        return job.model_copy(update={"status": status, **changes})

    async def _store(self, job: Job) -> Job:
        """Replace the in-memory snapshot, then persist it."""
        if job.id not in self._jobs:
            # Cleared while the caller held the lock.
            raise NotFoundError("job", job.id)
        self._jobs[job.id] = job
        await self._storage.save_job(job)
        return job.model_copy(deep=True)

    async def _save_result(self, job: Job, artifacts: CsvArtifacts, *, partial: bool) -> None:
        host = urllib.parse.urlparse(job.site_url).hostname or "site"
        metadata = {
            "filename": f"{slugify(host)}-{job.id[:8]}",
            "totalProducts": artifacts.total_products,
            "totalVariations": artifacts.total_variations,
            "siteUrl": job.site_url,
            "recipe": job.recipe_name,
            "createdAt": _utcnow().isoformat(),
            "partial": partial,
        }
        await self._storage.save_result(
            job.id,
            parent_csv=artifacts.parent_csv,
            variation_csv=artifacts.variation_csv,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    async def init(
        self,
        site_url: str | None,
        recipe_name: str | None,
        options: JobOptions | None = None,
    ) -> Job:
        """Validate a request, create a pending job and queue it.

        Returns immediately; the job runs in the background.

        Raises:
            ValidationError: Missing or malformed ``siteUrl``, missing or
                unknown recipe.
            RecipeError: The recipe exists but was rejected at load time.
            StorageError: The new job could not be persisted.
        """
        site_url = (site_url or "").strip()
        if not site_url:
            raise ValidationError("siteUrl is required", field="siteUrl")
        if not SITE_URL_PATTERN.match(site_url):
            raise ValidationError(
                "siteUrl must be an absolute http(s) URL", field="siteUrl"
            )
        recipe_name = (recipe_name or "").strip()
        if not recipe_name:
            raise ValidationError("recipe is required", field="recipe")
        try:
            recipe = self._recipes.get(recipe_name)
        except NotFoundError as exc:
            raise ValidationError(
                f"Recipe '{recipe_name}' not found", field="recipe"
            ) from exc

        now = _utcnow()
        job = Job(
            id=uuid.uuid4().hex,
            site_url=site_url,
            recipe_name=recipe.name,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
            options=resolve_options(options, recipe, self._settings),
            metadata={"recipe": recipe.name, "recipeVersion": recipe.version},
        )
        self._jobs[job.id] = job
        self._locks[job.id] = asyncio.Lock()
        try:
            await self._storage.save_job(job)
        except StorageError:
            self._jobs.pop(job.id, None)
            self._locks.pop(job.id, None)
            raise

        logger.info("orchestrator: job %s created for %s (recipe=%s)", job.id, site_url, recipe.name)
        if self._submit is not None:
            self._submit(job.id)
        return job.model_copy(deep=True)

    def get_status(self, job_id: str) -> Job:
        """Return a snapshot of *job_id*.

        Raises:
            NotFoundError: Unknown job id.
        """
        return self._get(job_id).model_copy(deep=True)

    def list_jobs(self) -> list[Job]:
        """Return every known job, most recent first."""
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
        return [job.model_copy(deep=True) for job in jobs]

    def active_jobs(self) -> list[Job]:
        """Return pending and running jobs, oldest first."""
        jobs = [job for job in self._jobs.values() if not job.is_terminal]
        return [job.model_copy(deep=True) for job in sorted(jobs, key=lambda j: j.created_at)]

    def is_cancel_requested(self, job_id: str) -> bool:
        """``True`` once cancellation was requested, or if the job no longer exists."""
        return job_id in self._cancel_requested or job_id not in self._jobs

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str) -> Job:
        """Cancel a job.

        Pending jobs become ``cancelled`` at once.  Running jobs are flagged
        and stay ``running`` until the scheduler acknowledges at its next
        batch boundary.

        Raises:
            NotFoundError: Unknown job id.
            InvalidStateError: The job is already terminal.
        """
        async with self._lock(job_id):
            job = self._get(job_id)
            if job.is_terminal:
                raise InvalidStateError(job_id, job.status.value, "cancel")
            if job.status is JobStatus.PENDING:
                job = self._transition(job, JobStatus.CANCELLED)
                self._cancel_requested.discard(job_id)
                scrape_jobs_total.labels(status=JobStatus.CANCELLED.value).inc()
                logger.info("orchestrator: job %s cancelled before start", job_id)
            else:
                self._cancel_requested.add(job_id)
                job = job.model_copy(
                    update={
                        "metadata": {**job.metadata, "cancelRequested": True},
                        "updated_at": _utcnow(),
                    }
                )
                logger.info("orchestrator: cancellation requested for running job %s", job_id)
            return await self._store(job)

    async def mark_running(self, job_id: str) -> Job:
        """Move a pending job to ``running``.

        Raises:
            InvalidStateError: The job is not pending (cancelled while queued).
        """
        async with self._lock(job_id):
            job = self._get(job_id)
            job = self._transition(job, JobStatus.RUNNING, started_at=_utcnow())
            logger.info("orchestrator: job %s running", job_id)
            return await self._store(job)

    async def report_progress(
        self,
        job_id: str,
        processed: int,
        total: int | None,
        metadata: dict[str, Any] | None = None,
    ) -> Job:
        """Record batch progress of a running job.

        ``processed`` is clamped to ``total`` and ``progress`` never
        decreases, even when discovery grows ``total``.  Reports for a job
        that is no longer running are ignored.
        """
        async with self._lock(job_id):
            job = self._get(job_id)
            if job.status is not JobStatus.RUNNING:
                logger.debug(
                    "orchestrator: progress for %s job %s ignored", job.status.value, job_id
                )
                return job.model_copy(deep=True)

            processed = max(0, processed)
            if total is not None:
                total = max(0, total)
                processed = min(processed, total)
            fraction = processed / total if total else 0.0
            progress = max(job.progress, min(1.0, max(0.0, fraction)))

            job = job.model_copy(
                update={
                    "processed_products": max(job.processed_products, processed),
                    "total_products": total,
                    "progress": progress,
                    "metadata": {**job.metadata, **(metadata or {})},
                    "updated_at": _utcnow(),
                }
            )
            return await self._store(job)

    async def complete(
        self,
        job_id: str,
        artifacts: CsvArtifacts,
        metadata: dict[str, Any] | None = None,
    ) -> Job:
        """Persist the CSV result and mark the job ``completed``.

        No-op for a job that is already terminal.

        Raises:
            InvalidStateError: The job never started.
        """
        async with self._lock(job_id):
            job = self._get(job_id)
            if job.is_terminal:
                logger.info(
                    "orchestrator: complete ignored, job %s already %s", job_id, job.status.value
                )
                return job.model_copy(deep=True)
            if job.status is not JobStatus.RUNNING:
                raise InvalidStateError(job_id, job.status.value, "complete")

            await self._save_result(job, artifacts, partial=False)
            job = self._transition(
                job,
                JobStatus.COMPLETED,
                progress=1.0,
                metadata={**job.metadata, **(metadata or {})},
            )
            job = await self._store(job)
            self._cancel_requested.discard(job_id)
            scrape_jobs_total.labels(status=JobStatus.COMPLETED.value).inc()
            logger.info(
                "orchestrator: job %s completed (%d products, %d variations)",
                job_id,
                artifacts.total_products,
                artifacts.total_variations,
            )
            return job

    async def fail(
        self,
        job_id: str,
        error: str,
        artifacts: CsvArtifacts | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Job:
        """Mark the job ``failed`` with *error*, keeping partial CSVs if given.

        No-op for a job that is already terminal.
        """
        async with self._lock(job_id):
            job = self._get(job_id)
            if job.is_terminal:
                logger.info(
                    "orchestrator: fail ignored, job %s already %s", job_id, job.status.value
                )
                return job.model_copy(deep=True)

            extra = dict(metadata or {})
            if artifacts is not None and artifacts.total_products > 0:
                await self._save_result(job, artifacts, partial=True)
                extra["partialResult"] = True
            job = self._transition(
                job,
                JobStatus.FAILED,
                error=error,
                metadata={**job.metadata, **extra},
            )
            job = await self._store(job)
            self._cancel_requested.discard(job_id)
            scrape_jobs_total.labels(status=JobStatus.FAILED.value).inc()
            logger.warning("orchestrator: job %s failed: %s", job_id, error)
            return job

    async def acknowledge_cancel(self, job_id: str, metadata: dict[str, Any] | None = None) -> Job:
        """Called by the scheduler when it stops for a cancellation request.

        Records extracted so far are discarded; no result is stored.
        """
        async with self._lock(job_id):
            job = self._get(job_id)
            if job.is_terminal:
                return job.model_copy(deep=True)
            job = self._transition(
                job,
                JobStatus.CANCELLED,
                metadata={**job.metadata, **(metadata or {})},
            )
            job = await self._store(job)
            self._cancel_requested.discard(job_id)
            scrape_jobs_total.labels(status=JobStatus.CANCELLED.value).inc()
            logger.info("orchestrator: job %s cancelled", job_id)
            return job

    # ------------------------------------------------------------------
    # Startup and maintenance
    # ------------------------------------------------------------------

    async def recover(self) -> dict[str, int]:
        """Load persisted jobs at startup.

        Jobs a previous process left ``running`` are failed with
        :data:`INTERRUPTED_ERROR`.  Jobs still ``pending`` never started and
        are queued again.

        Returns:
            Counts of ``loaded``, ``interrupted`` and ``requeued`` jobs.
        """
        jobs = await self._storage.list_jobs()
        interrupted = 0
        requeue: list[str] = []
        for job in jobs:
            if job.status is JobStatus.RUNNING:
                job = self._transition(job, JobStatus.FAILED, error=INTERRUPTED_ERROR)
                await self._storage.save_job(job)
                interrupted += 1
            elif job.status is JobStatus.PENDING:
                requeue.append(job.id)
            self._jobs[job.id] = job
            self._locks[job.id] = asyncio.Lock()

        # list_jobs is newest first; queue oldest first.
        if self._submit is not None:
            for job_id in reversed(requeue):
                self._submit(job_id)

        summary = {"loaded": len(jobs), "interrupted": interrupted, "requeued": len(requeue)}
        logger.info(
            "orchestrator: recovered %d job(s), %d interrupted, %d requeued",
            summary["loaded"],
            summary["interrupted"],
            summary["requeued"],
        )
        return summary

    async def clear(self) -> int:
        """Stop active jobs and wipe every job and result.

        Running schedulers see their job disappear at the next batch
        boundary and stop without producing output.  The locks of active
        jobs are held while wiping, so a transition already in flight
        finishes first and its rows are removed with the rest.

        Returns:
            Number of jobs removed from storage.
        """
        active = [job_id for job_id, job in self._jobs.items() if not job.is_terminal]
        async with AsyncExitStack() as stack:
            for job_id in active:
                lock = self._locks.get(job_id)
                if lock is not None:
                    await stack.enter_async_context(lock)
            self._jobs.clear()
            self._locks.clear()
            self._cancel_requested.clear()
            removed = await self._storage.clear()
        logger.info("orchestrator: cleared %d job(s), %d were active", removed, len(active))
        return removed
