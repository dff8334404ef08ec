"""Factory Boy factory for job snapshots.

Usage::

    from tests.factories.jobs import JobFactory

    job = JobFactory.build(status=JobStatus.RUNNING)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import factory

from product_scraper.core.schemas.jobs import Job, JobOptions, JobStatus


class JobFactory(factory.Factory):
    """A job snapshot as the orchestrator stores it."""

    class Meta:
        model = Job

    id = factory.LazyFunction(lambda: uuid.uuid4().hex)
    site_url = "https://shop.test/catalog"
    recipe_name = "test-shop"
    status = JobStatus.PENDING
    created_at = factory.LazyFunction(lambda: datetime.now(timezone.utc))
    updated_at = factory.LazyAttribute(lambda o: o.created_at)
    options = factory.LazyFunction(
        lambda: JobOptions(max_products=10, delay=0, timeout=5_000, max_concurrent=2, batch_size=5)
    )
    metadata = factory.LazyFunction(lambda: {"recipe": "test-shop"})
