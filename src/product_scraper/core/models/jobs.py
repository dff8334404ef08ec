"""SQLAlchemy ORM models for scrape jobs and their stored results.

``ScrapeJobRow`` is the persisted snapshot of a job.  The orchestrator owns
every mutation and writes a full snapshot after each one, so the row always
reflects the last state transition or progress report.

``ScrapeResultRow`` holds the two CSV artifacts produced by a job plus a
small metadata document.  ``variation_csv`` is ``NULL`` when the job produced
no variation records, which is how the download endpoint tells "never
produced" (404) apart from an empty file.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from product_scraper.core.models.base import Base, JSONType


class ScrapeJobRow(Base):
    """A scrape job snapshot.

    Attributes:
        id: Opaque job identifier (UUID4 hex string).
        site_url: Start URL the job crawls.
        recipe_name: Name of the recipe requested at init.
        status: ``"pending"``, ``"running"``, ``"completed"``, ``"failed"``
            or ``"cancelled"``.
        progress: Completion fraction in ``[0, 1]``.
        total_products: Products discovered so far, ``NULL`` until known.
        processed_products: Products processed (extracted or skipped).
        error: Human-readable error for failed jobs.
        options: Effective job options (camelCase keys, as the API shows them).
        job_metadata: Free-form run metadata (resolved recipe, strategy ...).
        created_at / updated_at / started_at / completed_at: Lifecycle timestamps.
    """

    __tablename__ = "scrape_jobs"

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    site_url: Mapped[str] = mapped_column(sa.Text, nullable=False)
    recipe_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)

    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text("'pending'"),
    )
    progress: Mapped[float] = mapped_column(
        sa.Float,
        nullable=False,
        server_default=sa.text("0"),
    )
    total_products: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    processed_products: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    options: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    # ``metadata`` is reserved on declarative classes.
    job_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        sa.Index("idx_scrape_jobs_status", "status"),
        sa.Index("idx_scrape_jobs_created_at", "created_at"),
    )


class ScrapeResultRow(Base):
    """CSV artifacts and metadata for one job.

    Attributes:
        job_id: The job that produced the result.
        parent_csv: Parent product CSV document.
        variation_csv: Variation CSV document, ``NULL`` when none was produced.
        result_metadata: ``filename``, ``totalProducts``, ``totalVariations``,
            ``siteUrl``, ``recipe``, ``createdAt``, ``partial``.
        size_bytes: UTF-8 size of both documents, for storage stats.
        created_at: When the result was stored.
    """

    __tablename__ = "scrape_results"

    job_id: Mapped[str] = mapped_column(
        sa.String(64),
        sa.ForeignKey("scrape_jobs.id", ondelete="CASCADE"),
        primary_key=True,
    )
    parent_csv: Mapped[str] = mapped_column(sa.Text, nullable=False)
    variation_csv: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    result_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    size_bytes: Mapped[int] = mapped_column(
        sa.Integer,
        nullable=False,
        server_default=sa.text("0"),
    )
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
