"""Persistence of job snapshots and CSV results.

``ScrapeStorage`` is the repository behind the orchestrator: job snapshots
go in through :meth:`save_job` after every mutation, CSV artifacts through
:meth:`save_result` when a job finishes.  Only the orchestrator writes; the
API, telemetry and the download endpoint read.

Every SQLAlchemy failure is re-raised as
:class:`~product_scraper.core.exceptions.StorageError` naming the operation,
so callers never depend on driver exceptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from product_scraper.core.exceptions import StorageError
from product_scraper.core.models.jobs import ScrapeJobRow, ScrapeResultRow
from product_scraper.core.schemas.jobs import Job, JobOptions, JobStatus

logger = logging.getLogger(__name__)


@dataclass
class StoredResult:
    """CSV artifacts of one job as read back from storage."""

    job_id: str
    parent_csv: str
    variation_csv: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    size_bytes: int = 0
    created_at: datetime | None = None

    def to_api(self) -> dict[str, Any]:
        """Shape used by ``GET /api/storage/job/{id}``.

        A missing variation document is reported as ``""`` for the UI.
        """
        return {
            "parentCsv": self.parent_csv,
            "variationCsv": self.variation_csv or "",
            "metadata": self.metadata,
        }


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_job(row: ScrapeJobRow) -> Job:
    return Job(
        id=row.id,
        site_url=row.site_url,
        recipe_name=row.recipe_name,
        status=JobStatus(row.status),
        progress=row.progress,
        total_products=row.total_products,
        processed_products=row.processed_products,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        started_at=_as_utc(row.started_at),
        completed_at=_as_utc(row.completed_at),
        error=row.error,
        options=JobOptions.model_validate(row.options or {}),
        metadata=dict(row.job_metadata or {}),
    )


def _apply_job(row: ScrapeJobRow, job: Job) -> None:
    row.site_url = job.site_url
    row.recipe_name = job.recipe_name
    row.status = job.status.value
    row.progress = job.progress
    row.total_products = job.total_products
    row.processed_products = job.processed_products
    row.error = job.error
    row.options = job.options.model_dump(by_alias=True, exclude_none=True)
    row.job_metadata = dict(job.metadata)
    row.created_at = job.created_at
    row.updated_at = job.updated_at
    row.started_at = job.started_at
    row.completed_at = job.completed_at


class ScrapeStorage:
    """Async repository for ``scrape_jobs`` and ``scrape_results``.

    Args:
        session_factory: The application's ``async_sessionmaker``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def save_job(self, job: Job) -> None:
        """Insert or update the snapshot of *job*."""
        try:
            async with self._session_factory() as session:
                row = await session.get(ScrapeJobRow, job.id)
                if row is None:
                    row = ScrapeJobRow(id=job.id)
                    session.add(row)
                _apply_job(row, job)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("storage: save_job failed for %s: %s", job.id, exc)
            raise StorageError(f"Could not save job '{job.id}': {exc}", operation="save_job") from exc

    async def get_job(self, job_id: str) -> Job | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(ScrapeJobRow, job_id)
                return _row_to_job(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not read job '{job_id}': {exc}", operation="get_job") from exc

    async def list_jobs(self) -> list[Job]:
        """Return every persisted job, most recent first."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    sa.select(ScrapeJobRow).order_by(ScrapeJobRow.created_at.desc())
                )
                return [_row_to_job(row) for row in result.scalars()]
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not list jobs: {exc}", operation="list_jobs") from exc

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def save_result(
        self,
        job_id: str,
        *,
        parent_csv: str,
        variation_csv: str | None,
        metadata: dict[str, Any],
    ) -> StoredResult:
        """Store (or replace) the CSV artifacts of *job_id*."""
        size = len(parent_csv.encode("utf-8")) + len((variation_csv or "").encode("utf-8"))
        created_at = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                row = await session.get(ScrapeResultRow, job_id)
                if row is None:
                    row = ScrapeResultRow(job_id=job_id)
                    session.add(row)
                row.parent_csv = parent_csv
                row.variation_csv = variation_csv
                row.result_metadata = dict(metadata)
                row.size_bytes = size
                row.created_at = created_at
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("storage: save_result failed for %s: %s", job_id, exc)
            raise StorageError(
                f"Could not save result for job '{job_id}': {exc}", operation="save_result"
            ) from exc
        logger.info("storage: stored result for job %s (%d bytes)", job_id, size)
        return StoredResult(
            job_id=job_id,
            parent_csv=parent_csv,
            variation_csv=variation_csv,
            metadata=dict(metadata),
            size_bytes=size,
            created_at=created_at,
        )

    async def get_result(self, job_id: str) -> StoredResult | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(ScrapeResultRow, job_id)
        except SQLAlchemyError as exc:
            raise StorageError(
                f"Could not read result for job '{job_id}': {exc}", operation="get_result"
            ) from exc
        if row is None:
            return None
        return StoredResult(
            job_id=row.job_id,
            parent_csv=row.parent_csv,
            variation_csv=row.variation_csv,
            metadata=dict(row.result_metadata or {}),
            size_bytes=row.size_bytes,
            created_at=_as_utc(row.created_at),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def stats(self) -> dict[str, int]:
        """Counts per status and total stored CSV bytes."""
        try:
            async with self._session_factory() as session:
                status_rows = await session.execute(
                    sa.select(ScrapeJobRow.status, sa.func.count()).group_by(ScrapeJobRow.status)
                )
                counts = {status: count for status, count in status_rows.all()}
                total_bytes = await session.scalar(
                    sa.select(sa.func.coalesce(sa.func.sum(ScrapeResultRow.size_bytes), 0))
                )
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not compute storage stats: {exc}", operation="stats") from exc

        return {
            "totalJobs": sum(counts.values()),
            "totalStorage": int(total_bytes or 0),
            "activeJobs": counts.get(JobStatus.RUNNING.value, 0),
            "pendingJobs": counts.get(JobStatus.PENDING.value, 0),
            "completedJobs": counts.get(JobStatus.COMPLETED.value, 0),
            "failedJobs": counts.get(JobStatus.FAILED.value, 0),
            "cancelledJobs": counts.get(JobStatus.CANCELLED.value, 0),
        }

    async def clear(self) -> int:
        """Delete every result and job.  Returns the number of jobs removed."""
        try:
            async with self._session_factory() as session:
                await session.execute(sa.delete(ScrapeResultRow))
                deleted = await session.execute(sa.delete(ScrapeJobRow))
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("storage: clear failed: %s", exc)
            raise StorageError(f"Could not clear storage: {exc}", operation="clear") from exc
        removed = deleted.rowcount or 0
        logger.info("storage: cleared %d job(s)", removed)
        return removed
