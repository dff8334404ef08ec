"""Pydantic schemas for scrape jobs.

``Job`` is both the orchestrator's in-memory record and the API
representation; it serialises with camelCase keys (``siteUrl``,
``processedProducts`` ...) because that is the contract the dashboard
consumes.  ``progress`` is always a fraction in ``[0, 1]``.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


class JobStatus(str, enum.Enum):
    """Lifecycle states of a scrape job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


#: States a job never leaves.
TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

#: Legal transitions of the job state machine.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class JobOptions(_CamelModel):
    """Per-job tuning options.

    Every field is optional on input; the orchestrator fills gaps from the
    recipe's ``behavior`` block and then from ``Settings`` and stores the
    effective values on the job.

    Attributes:
        max_products: Stop after this many products (1–10000).
        delay: Base inter-request delay in milliseconds (0–10000).
        timeout: Per-request timeout in milliseconds (5000–120000).
        max_concurrent: In-flight extraction tasks per job (1–20).
        batch_size: Items per progress-reporting batch (1–50).
        max_pages: Listing pages to follow (1–100).
        job_timeout: Wall-clock budget for the whole job in seconds.  Capped
            by ``Settings.job_timeout_seconds``.
    """

    max_products: Optional[int] = Field(default=None, ge=1, le=10_000)
    delay: Optional[int] = Field(default=None, ge=0, le=10_000)
    timeout: Optional[int] = Field(default=None, ge=5_000, le=120_000)
    max_concurrent: Optional[int] = Field(default=None, ge=1, le=20)
    batch_size: Optional[int] = Field(default=None, ge=1, le=50)
    max_pages: Optional[int] = Field(default=None, ge=1, le=100)
    job_timeout: Optional[int] = Field(default=None, ge=1)


class ScrapeInitRequest(_CamelModel):
    """Body of ``POST /api/scrape/init``.

    ``siteUrl`` and ``recipe`` are optional here so that missing values are
    reported by the orchestrator as a ``ValidationError`` in the standard
    envelope.  ``recipeName`` is accepted as an alias of ``recipe``.
    """

    site_url: Optional[str] = None
    recipe: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("recipe", "recipeName"),
    )
    options: Optional[JobOptions] = None


class Job(_CamelModel):
    """A tracked execution of a scrape against a site URL using a recipe."""

    id: str
    site_url: str
    recipe_name: str
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    total_products: Optional[int] = None
    processed_products: int = 0
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    options: JobOptions = Field(default_factory=JobOptions)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def recipe(self) -> str:
        """Recipe name under the key the dashboard reads."""
        return self.recipe_name

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_api(self) -> dict[str, Any]:
        """Serialise with camelCase keys and ISO timestamps."""
        return self.model_dump(by_alias=True, mode="json")
